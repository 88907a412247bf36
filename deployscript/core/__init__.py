"""Core functionality"""
from .session import RemoteSession, CommandResult, open_session
from .orchestrator import run_tasks, deploy

__all__ = ["RemoteSession", "CommandResult", "open_session", "run_tasks", "deploy"]
