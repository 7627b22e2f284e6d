"""
II-Code-Agent - a terminal coding agent.

Streams model output, runs tools the model asks for, compacts long sessions
and snapshots the working tree after every turn.
"""

__version__ = "0.1.0"
