"""
Artifact models — the things a pipeline run leaves on disk.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class SourceArtifact(BaseModel):
    """A fetched source tree, identified by (url, ref, path)."""

    name: str
    repository_url: str
    version_ref: str
    path: str
    commit: str | None = None
    used_fallback: bool = False
    backup_path: str | None = None


class BuildArtifact(BaseModel):
    """Binaries/libraries installed under a prefix by the builder."""

    name: str
    install_prefix: str
    source_path: str
    outputs: list[str] = Field(default_factory=list)


class HostIdentity(BaseModel):
    """A generated key pair with enforced permissions."""

    algorithm: str
    private_key: str
    public_key: str
    private_mode: int
    public_mode: int
    fingerprint: str = ""          # sha256 of the public key file
    reused: bool = False           # skip-if-exists kept the existing pair
    backups: list[str] = Field(default_factory=list)


class ServiceUnit(BaseModel):
    """A rendered and registered supervisor unit."""

    name: str
    unit_path: str
    state: str = "unknown"
    enabled: bool = False
    backup_path: str | None = None
