"""
branchchat - conversations with branching history and variable state.
"""

from .cli import app

app(prog_name="branchchat")
