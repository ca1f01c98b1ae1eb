"""Application runtime package."""

from clawless.app.bootstrap import build_channel, build_runtime, serve
from clawless.app.runtime import AppRuntime

__all__ = ["AppRuntime", "build_channel", "build_runtime", "serve"]
