"""Short unique names for build workspaces, scratch files and compile requests."""

from uuid import uuid4

# Workspace paths end up inside MSBuild intermediate paths; keep them short.
_ID_HEX_LENGTH = 12


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:_ID_HEX_LENGTH]}"
