"""chatdelta command-line interface.

A thin click shell over the orchestration core: option parsing, client
construction and output rendering.
"""

from chatdelta.cli.main import cli

__all__ = ["cli"]
