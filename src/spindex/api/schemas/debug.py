"""API schemas for the debug triage endpoint."""

from pydantic import BaseModel, Field


class TriageStep(BaseModel):
    """Outcome of one triage step; status and error are only set on failure."""

    ok: bool
    status: int | None = Field(default=None, description="Upstream HTTP status, if any")
    error: str | None = None


class ResolveStep(TriageStep):
    artist_id: str | None = None


class ArtistStep(TriageStep):
    artist_popularity: int | None = None


class TriageTrackSchema(BaseModel):
    """Simplified track as listed on an album."""

    id: str
    name: str | None = None
    duration_ms: int | None = None


class TracksStep(TriageStep):
    tracks_count: int | None = None
    top3: list[TriageTrackSchema] = Field(default_factory=list)


class TriageResponse(BaseModel):
    """Response of GET /api/debug/triage.

    Steps run in order and stop at the first failure, so later steps stay null.
    """

    input: str
    step_a: ResolveStep | None = None
    step_b: ArtistStep | None = None
    step_c: TracksStep | None = None
