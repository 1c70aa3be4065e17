"""Agent child processes — argv/env construction and the process handle."""

from conduit.process.args import build_args, build_env, permission_flags
from conduit.process.handle import ProcessHandle

__all__ = [
    "ProcessHandle",
    "build_args",
    "build_env",
    "permission_flags",
]
