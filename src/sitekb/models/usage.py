from pydantic import BaseModel, ConfigDict, Field


class TokenUsage(BaseModel):
    prompt_tokens: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)

    model_config = ConfigDict(frozen=True)

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class UsageSummary(BaseModel):
    """Token totals for one client, broken down by model and operation."""

    client_id: str
    total_prompt_tokens: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)
    by_model: dict[str, TokenUsage] = Field(default_factory=dict)
    by_operation: dict[str, TokenUsage] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class ClientUsageTotal(BaseModel):
    client_id: str
    name: str
    total_prompt_tokens: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)

    model_config = ConfigDict(frozen=True)
