"""MCP server descriptors passed to the agent when a session opens."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from loguru import logger

McpTransport = Literal["http", "sse"]


@dataclass(frozen=True)
class StdioMcpServer:
    name: str
    command: str
    args: tuple[str, ...] = ()
    env: tuple[tuple[str, str], ...] = ()

    def to_acp(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "command": self.command,
            "args": list(self.args),
            "env": [{"name": key, "value": value} for key, value in self.env],
        }


@dataclass(frozen=True)
class HttpMcpServer:
    name: str
    url: str
    transport: McpTransport = "http"
    headers: tuple[tuple[str, str], ...] = ()

    def to_acp(self) -> dict[str, Any]:
        return {
            "type": self.transport,
            "name": self.name,
            "url": self.url,
            "headers": [{"name": key, "value": value} for key, value in self.headers],
        }


McpServerDescriptor = StdioMcpServer | HttpMcpServer


class InvalidMcpEntry(ValueError):
    """One MCP entry that cannot be normalized."""


def _string_pairs(raw: object, field_name: str) -> tuple[tuple[str, str], ...]:
    if raw is None:
        return ()
    if isinstance(raw, Mapping):
        return tuple((str(key), str(value)) for key, value in raw.items())
    if isinstance(raw, list):
        pairs: list[tuple[str, str]] = []
        for item in raw:
            if not isinstance(item, Mapping) or "name" not in item or "value" not in item:
                raise InvalidMcpEntry(f"{field_name} entries need name and value")
            pairs.append((str(item["name"]), str(item["value"])))
        return tuple(pairs)
    raise InvalidMcpEntry(f"{field_name} must be a mapping or a list")


def normalize_mcp_server(name: str, entry: object) -> McpServerDescriptor:
    """Normalize one raw entry into a command or URL based descriptor."""
    if not isinstance(entry, Mapping):
        raise InvalidMcpEntry("entry is not an object")
    name = str(entry.get("name") or name).strip()
    if not name:
        raise InvalidMcpEntry("entry has no name")

    command = entry.get("command")
    if command is not None:
        if not isinstance(command, str) or not command.strip():
            raise InvalidMcpEntry("command must be a non-empty string")
        args = entry.get("args") or []
        if not isinstance(args, list):
            raise InvalidMcpEntry("args must be a list")
        return StdioMcpServer(
            name=name,
            command=command,
            args=tuple(str(arg) for arg in args),
            env=_string_pairs(entry.get("env"), "env"),
        )

    url = entry.get("url") or entry.get("httpUrl")
    if not isinstance(url, str) or not url.strip():
        raise InvalidMcpEntry("entry needs a command or a url")
    transport = entry.get("type") or entry.get("transport")
    if transport is None:
        transport = "http" if entry.get("httpUrl") else "sse"
    if transport not in ("http", "sse"):
        raise InvalidMcpEntry(f"unsupported transport {transport!r}")
    return HttpMcpServer(
        name=name,
        url=url.strip(),
        transport=transport,
        headers=_string_pairs(entry.get("headers"), "headers"),
    )


def _iter_entries(raw: object) -> list[tuple[str, object]]:
    if isinstance(raw, Mapping) and "mcpServers" in raw:
        raw = raw["mcpServers"]
    if isinstance(raw, Mapping):
        return [(str(key), value) for key, value in raw.items()]
    if isinstance(raw, list):
        return [(str(index), value) for index, value in enumerate(raw)]
    logger.warning("acp.mcp.ignored reason=unsupported container type={}", type(raw).__name__)
    return []


def normalize_mcp_servers(raw: object) -> list[McpServerDescriptor]:
    servers: list[McpServerDescriptor] = []
    for name, entry in _iter_entries(raw):
        try:
            servers.append(normalize_mcp_server(name, entry))
        except InvalidMcpEntry as exc:
            logger.warning("acp.mcp.dropped name={} reason={}", name, exc)
    return servers


def resolve_mcp_servers(
    override: object | None = None,
    settings_path: Path | None = None,
) -> list[McpServerDescriptor]:
    """Resolve MCP servers from an explicit override, else a settings file, else nothing.

    The override may be a JSON string, a mapping or a list. Entries that
    cannot be normalized are dropped with a logged reason.
    """
    if override is not None:
        if isinstance(override, str):
            try:
                override = json.loads(override)
            except json.JSONDecodeError as exc:
                logger.warning("acp.mcp.override_unparsable error={}", exc)
                return []
        return normalize_mcp_servers(override)

    if settings_path is None or not settings_path.exists():
        return []
    try:
        payload = json.loads(settings_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("acp.mcp.settings_unreadable path={} error={}", settings_path, exc)
        return []
    if not isinstance(payload, Mapping):
        logger.warning("acp.mcp.settings_unreadable path={} error=not an object", settings_path)
        return []
    return normalize_mcp_servers(payload.get("mcpServers") or {})
