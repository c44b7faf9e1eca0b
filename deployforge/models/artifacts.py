"""Immutable build artifact references."""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict

_UNSAFE_NAME_CHARS = re.compile(r"[^a-z0-9-]+")


class Artifact(BaseModel):
    """An immutable, uniquely identified build produced upstream.

    ``artifact_id`` is either a content digest or a monotonically comparable
    version string (``"svc:7"``).  One identifier always resolves to the
    same bytes; the engine never mutates an artifact.
    """

    model_config = ConfigDict(frozen=True)

    service: str
    artifact_id: str
    source_ref: str = ""  # commit sha, tag, or build url
    digest: str = ""  # "sha256:<hex>" when the registry supplies one

    @property
    def slug(self) -> str:
        """DNS-safe short form of the identifier, used in server group names."""
        slug = _UNSAFE_NAME_CHARS.sub("-", self.artifact_id.lower()).strip("-")
        return slug[-24:] or "artifact"
