from pydantic import BaseModel
from typing import Optional


class WebhookLogOut(BaseModel):
    id: str
    provider: str
    eventType: str
    eventId: Optional[str] = None
    processed: bool
    errorMessage: Optional[str] = None
    retryCount: int = 0
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None
