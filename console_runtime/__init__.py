"""Session and realtime channel runtime for the device-monitoring admin console."""

from console_runtime.runtime import ConsoleRuntime, build_runtime

__all__ = ["ConsoleRuntime", "build_runtime"]
