"""Authentication models for Report Hub CI uploads.

CI pipelines authenticate with a per-project API key. A validated key
resolves to the project the uploads are stored under; the raw key is never
kept on the model.

Used by:
    - reporthub.auth.auth: result of key validation
    - reporthub.service.main: project scoping of ``/ci-upload``
"""

from pydantic import BaseModel, Field


class CIApiKey(BaseModel):
    """A validated CI API key.

    Attributes:
        key_id: Short non-secret identifier of the key (its first characters),
            safe to log
        project_id: Project every upload made with the key belongs to
    """

    key_id: str = Field(..., min_length=1)
    project_id: str = Field(..., min_length=1)
