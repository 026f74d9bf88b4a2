# =========================================================
# FILE: /appbuilder/schemas/generate.py
# =========================================================

from typing import List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, validator

PROMPT_MIN_CHARS = 10
PROMPT_MAX_CHARS = 5000


def _validate_prompt(v: str) -> str:
    v = (v or "").strip()
    if len(v) < PROMPT_MIN_CHARS:
        raise ValueError(f"Prompt must be at least {PROMPT_MIN_CHARS} characters")
    if len(v) > PROMPT_MAX_CHARS:
        raise ValueError(f"Prompt must be under {PROMPT_MAX_CHARS} characters")
    return v


class BusinessContext(BaseModel):
    business_context: Optional[str] = None
    company_name: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    use_cases: Optional[List[str]] = None


class GenerateRequest(BaseModel):
    prompt: str
    business_context: Optional[BusinessContext] = None

    @validator("prompt")
    def validate_prompt(cls, v: str):
        return _validate_prompt(v)


class IterateRequest(BaseModel):
    prompt: str

    @validator("prompt")
    def validate_prompt(cls, v: str):
        return _validate_prompt(v)


class GenerateResponse(BaseModel):
    id: str


class IterateResponse(BaseModel):
    iteration_id: str


class JobStatusResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    status: str
    current_stage: Optional[str] = None
    current_detail: Optional[str] = None
    iteration_count: int = 0
    title: Optional[str] = None
    description: Optional[str] = None
    error: Optional[str] = None
    published: bool = False
    preview_url: Optional[str] = None


class PreviewStartResponse(BaseModel):
    url: Optional[str] = None


class PreviewStatusResponse(BaseModel):
    status: Literal["ready", "pending", "failed", "stopped"]
    url: Optional[str] = None
    error: Optional[str] = None


class HealthResponse(BaseModel):
    status: str = "ok"
    active_jobs: int = Field(0, ge=0)
    # PENDING or GENERATING rows in the job store
    open_jobs: int = Field(0, ge=0)
