"""
NoteRef MCP - Bidirectional note references as an MCP server.
This package keeps a directed reference graph between personal notes in sync
with their content: links to other notes are parsed on every save, backlink
annotations are appended to the referenced notes, and live client sessions
are told which notes changed.

This version uses synchronous operations.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("noteref-mcp")
except PackageNotFoundError:
    __version__ = "0.3.0"
