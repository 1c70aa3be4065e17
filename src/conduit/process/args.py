"""Argument and environment construction for the agent subprocess.

Pure functions of the session and configuration, testable without spawning.
"""

from __future__ import annotations

from collections.abc import Mapping

from conduit.config.models import AgentConfig
from conduit.constants import STREAM_JSON_FLAGS
from conduit.session.models import Session


def build_args(session: Session, config: AgentConfig) -> list[str]:
    """Build the agent argv for *session*.

    Base stream-json flags, any configured extra args, ``--resume <id>`` when
    the session resumes a prior conversation, then the permission flag.
    """
    args = [config.executable, *STREAM_JSON_FLAGS, *config.extra_args]

    if session.resume_of:
        args.extend(["--resume", session.resume_of])

    mode = session.permission_mode or config.permission_mode
    args.extend(permission_flags(mode))
    return args


def permission_flags(mode: str) -> list[str]:
    """CLI flags that select *mode*.  ``default`` needs none."""
    match mode:
        case "default" | "":
            return []
        case "bypassPermissions":
            return ["--dangerously-skip-permissions"]
        case _:
            return ["--permission-mode", mode]


def build_env(config: AgentConfig, base: Mapping[str, str]) -> dict[str, str]:
    """Environment for the child: *base* minus stripped keys, heap-capped.

    Strips LLM API keys so the CLI uses subscription auth instead of
    accidentally hitting the API on the user's key, and caps the Node.js V8
    heap so one agent cannot OOM-kill the whole process tree.
    """
    stripped = set(config.strip_env)
    env = {k: v for k, v in base.items() if k not in stripped}
    if config.node_heap_mb > 0:
        node_opts = env.get("NODE_OPTIONS", "")
        if "--max-old-space-size" not in node_opts:
            separator = " " if node_opts else ""
            heap_flag = f"--max-old-space-size={config.node_heap_mb}"
            env["NODE_OPTIONS"] = f"{node_opts}{separator}{heap_flag}"
    return env
