"""Cache query request and response schemas."""

from pydantic import BaseModel, ConfigDict, Field


class QueryRequestSchema(BaseModel):
    """Request body for a cache query.

    Validated strictly: JSON strings are not coerced to numbers or booleans.
    """

    prompt: str = Field(
        min_length=1,
        description="The prompt to answer from cache or forward to the LLM.",
        examples=["What is machine learning?"],
    )
    model: str = Field(
        description="Target LLM model id. Part of the cache partition.",
        examples=["gpt-4o-mini"],
    )
    similarity_threshold: float | None = Field(
        default=None,
        ge=0.0,
        le=1.0,
        description="Minimum cosine similarity for a cache hit (inclusive). "
        "Defaults to CACHE_DEFAULT_SIMILARITY_THRESHOLD (0.85).",
        examples=[0.85],
    )
    context: str | None = Field(
        default=None,
        description="Caller-defined segment. Identical prompts under different contexts never share answers.",
        examples=["support-bot"],
    )
    include_debug: bool = Field(
        default=False,
        description="Include timing and match details in the response.",
    )

    model_config = ConfigDict(
        strict=True,
        json_schema_extra={
            "examples": [
                {
                    "prompt": "What is machine learning?",
                    "model": "gpt-4o-mini",
                    "similarity_threshold": 0.85,
                    "context": "support-bot",
                    "include_debug": False,
                }
            ]
        }
    )


class DebugSchema(BaseModel):
    """Timing and match details, present only when requested."""

    embedding_time_ms: float
    search_time_ms: float
    total_time_ms: float
    matched_cache_entry_id: str | None
    cache_entry_count: int


class QueryResponseSchema(BaseModel):
    """Answer to a cache query, from cache or from the provider."""

    cache_hit: bool
    response: str
    similarity_score: float | None = Field(description="Null on a miss.")
    cost_saved: float = Field(description="USD. 0 on a miss, positive on a hit.")
    llm_provider: str = Field(description='"cache" on a hit, otherwise the provider name.')
    debug: DebugSchema | None = None

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "cache_hit": True,
                    "response": "Machine learning is a field of AI that learns patterns from data.",
                    "similarity_score": 0.9312,
                    "cost_saved": 0.000042,
                    "llm_provider": "cache",
                }
            ]
        }
    )


class ErrorSchema(BaseModel):
    detail: str
    retry_after: int | None = None
    fallback: str | None = None
