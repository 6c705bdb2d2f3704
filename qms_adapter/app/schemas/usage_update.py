from pydantic import BaseModel, ConfigDict


class UsageUpdateMessage(BaseModel):
    """Wire schema of a usage-update delivery body (a JSON object)."""

    model_config = ConfigDict(strict=True, extra="ignore", frozen=True)

    attribute: str
    value: str
    unit: str
    user_id: str | None = None
    username: str | None = None
