from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class CacheOptions(BaseModel):
    """Cache policy for a single response.

    Emitted as a Cache-Control header; ``tags`` feed the X-Cache-Tags header
    used for grouped invalidation.
    """

    model_config = ConfigDict(frozen=True)

    max_age: int | None = None
    stale_while_revalidate: int | None = None
    tags: list[str] | None = None
    private: bool = False
