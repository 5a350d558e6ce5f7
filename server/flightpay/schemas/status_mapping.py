from pydantic import BaseModel, Field

from flightpay.schemas.common import Timestamped


class StatusMappingWrite(BaseModel):
    acquirer_code: str = Field(min_length=1, max_length=32)
    acquirer_status: str = Field(min_length=1, max_length=64)
    canonical_status: str = Field(min_length=1, max_length=32)
    description: str | None = Field(default=None, max_length=500)
    is_active: bool = True


class StatusMappingToggle(BaseModel):
    is_active: bool


class StatusMappingRead(Timestamped):
    id: str
    acquirer_code: str
    acquirer_status: str
    canonical_status: str
    description: str | None
    is_active: bool
