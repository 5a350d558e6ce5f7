from datetime import datetime

from pydantic import BaseModel, ConfigDict


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class Timestamped(ORMModel):
    created_at: datetime
    updated_at: datetime


class ErrorResponse(BaseModel):
    """Body of every payment error: a client-safe message and a PAYMENT_0xx code."""

    detail: str
    code: str
