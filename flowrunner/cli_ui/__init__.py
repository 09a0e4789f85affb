"""Rich terminal views of workflow graphs and run results."""

from flowrunner.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer

__all__ = [
    "TerminalGraphRenderer",
    "StatusTableRenderer",
]
