"""
specflow: keep specification documents and workflow state in sync.

Command-line front end over the core workflow API.
"""

__version__ = "1.0.0"
