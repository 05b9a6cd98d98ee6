"""planboard: personal kanban boards and weekly plans over one set of entities."""

__version__ = "0.1.0"
