"""Type definitions for the orchestrator."""

from typing import List, Optional, TypedDict


class RunOutcome(TypedDict):
    """Result of a successful orchestrated run."""
    mode: str
    target_url: Optional[str]
    resources: List[str]
