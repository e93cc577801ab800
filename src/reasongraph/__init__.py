"""Reasongraph - local-first reasoning graph with patch sync and trace linking."""

__version__ = "0.3.0"
