"""ralph-dashboard - orchestration dashboard for the Ralph autonomous development loop."""

from importlib.metadata import version

try:
    __version__ = version("ralph-dashboard")
except Exception:
    __version__ = "0.0.0-dev"
