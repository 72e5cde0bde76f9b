"""Zinc Language Client.

Client-side lifecycle manager for the Zinc language server: launches the server
process, negotiates capabilities, keeps open documents in sync and recovers
from crashes.
"""

__version__ = "0.1.0"
