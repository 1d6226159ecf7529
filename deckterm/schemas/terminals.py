from pydantic import BaseModel, ConfigDict, Field


# ── Terminals ────────────────────────────────────────────────────────────────


class CreateTerminalRequest(BaseModel):
    cwd: str | None = None
    cols: int | None = Field(default=None, ge=1, le=1000)
    rows: int | None = Field(default=None, ge=1, le=1000)


class TerminalResponse(BaseModel):
    id: str
    cols: int
    rows: int
    cwd: str


class TerminalSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    cwd: str
    created_at: int = Field(alias="createdAt")  # epoch milliseconds


class ResizeRequest(BaseModel):
    cols: int = Field(ge=1, le=1000)
    rows: int = Field(ge=1, le=1000)


class ResizeResponse(BaseModel):
    ok: bool = True
    cols: int
    rows: int


class OkResponse(BaseModel):
    ok: bool = True


# ── Health ───────────────────────────────────────────────────────────────────


class HealthResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str
    terminals: int
    max_terminals: int = Field(alias="maxTerminals")
    uptime: float
