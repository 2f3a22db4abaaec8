"""UI subpackage - everything the user sees."""

from agent_engine.ui.renderer import Renderer


def __getattr__(name):
    if name == "main":
        from agent_engine.ui.cli import main
        return main
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
