"""Filesystem-mailbox IPC for desktop processes.

This package lets independent processes exchange short action/result messages
by writing and watching well-known files below ``<tmp>/formswatch/<subdir>/``.
"""

__version__ = "0.2.1"
