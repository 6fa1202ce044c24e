"""relay-agent - message dispatch and resilience pipeline for chat assistants."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("relay-agent")
except PackageNotFoundError:
    __version__ = "0.1.0"

__logo__ = "📡"
__brand__ = "relay-agent"
