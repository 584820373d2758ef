from pydantic import BaseModel


class JobResponse(BaseModel):
    job_id: str
    account_id: str
    status: str
    credits_reserved: int = 0
    credits_consumed: int = 0
    image_count: int = 0
    input_image_refs: list[str] = []
    background_prompt: str
    progress: int = 0
    error: str | None = None
    created_at: str
    updated_at: str


class AccountCreateRequest(BaseModel):
    account_id: str
    tier: str = "free"


class TierUpdateRequest(BaseModel):
    tier: str


class PurchaseRequest(BaseModel):
    account_id: str
    credits: int
    external_ref: str


class SessionRequest(BaseModel):
    account_id: str


class JobProgressRequest(BaseModel):
    progress: int = 0


class JobCompleteRequest(BaseModel):
    images_processed: int


class JobFailRequest(BaseModel):
    error: str
