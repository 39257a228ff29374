"""Adapters — bindings to the network and the process table.

Public re-exports for convenient access.
"""

from kegworks.adapters.fetch import Fetcher, UrllibFetcher
from kegworks.adapters.process import AttachedProcess, ChildProcess, ProcessHandle, launch

__all__ = [
    "AttachedProcess",
    "ChildProcess",
    "Fetcher",
    "ProcessHandle",
    "UrllibFetcher",
    "launch",
]
