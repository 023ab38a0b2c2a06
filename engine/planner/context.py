from typing import Dict, Optional
from uuid import uuid4

import pydantic


def new_run_id() -> str:
    """
    Generate a stable, user-visible run ID.
    """
    return f"run-{uuid4().hex[:12]}"


class RunContext(pydantic.BaseModel):
    """
    Typed parameters of one pipeline run.

    These are the only run-level values a command template may use.
    """

    run_id: str = pydantic.Field(default_factory=new_run_id)
    version: str
    branch: Optional[str] = None
    environment: str = "staging"
    revision: Optional[str] = None

    model_config = pydantic.ConfigDict(frozen=True, extra="forbid")

    def template_values(self) -> Dict[str, str]:
        return {
            "run_id": self.run_id,
            "version": self.version,
            "branch": self.branch or "",
            "environment": self.environment,
            "revision": self.revision or "",
        }
