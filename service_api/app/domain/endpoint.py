"""
Cached endpoint wrapper.

Every public route is a plain async handler wrapped by ``cached_endpoint``:
parameters are sanitised, the result is served through the revalidating cache
under a key derived from those parameters, and HTTP responses carry a
``Cache-Control: max-age`` header matching the cache lifetime.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union

from fastapi.responses import JSONResponse

from shared.logging import get_logger

from .context import ApiContext


Handler = Callable[..., Awaitable[Any]]
# Returns (is_valid, default_value); invalid values are replaced by the default.
ParamSanitizer = Callable[[Dict[str, Any]], Tuple[bool, Any]]
CacheKey = Union[str, Callable[..., str]]
# Raises (typically ParamError) before any cache lookup when params are unusable.
Validator = Callable[..., None]

logger = get_logger("api.endpoint")


class CachedEndpoint:
    """An endpoint handler bound to its caching policy."""

    def __init__(
        self,
        handler: Handler,
        *,
        max_age: float,
        cache_key: Optional[CacheKey] = None,
        min_time_to_stale: Optional[float] = None,
        param_sanitizers: Optional[Dict[str, ParamSanitizer]] = None,
        validate: Optional[Validator] = None,
    ):
        if max_age <= 0:
            raise ValueError("max_age must be positive")
        self.handler = handler
        self.name = handler.__name__
        self.max_age = max_age
        self.min_time_to_stale = min_time_to_stale
        self.cache_key = cache_key
        self.param_sanitizers = dict(param_sanitizers or {})
        self.validate = validate

    @property
    def cache_control(self) -> str:
        return f"max-age={int(self.max_age)}"

    def sanitize(self, params: Dict[str, Any]) -> Dict[str, Any]:
        sanitized = dict(params)
        for name, sanitizer in self.param_sanitizers.items():
            is_valid, default = sanitizer(sanitized)
            if not is_valid:
                sanitized[name] = default
        return sanitized

    def _prepare(self, ctx: ApiContext, params: Dict[str, Any]) -> Dict[str, Any]:
        params = self.sanitize(params)
        if self.validate is not None:
            self.validate(ctx, **params)
        return params

    def key_for(self, params: Dict[str, Any]) -> str:
        if callable(self.cache_key):
            return self.cache_key(**params)
        if self.cache_key is not None:
            return self.cache_key
        if not params:
            return self.name
        return "-".join([self.name, *(str(params[name]) for name in sorted(params))])

    async def straight_call(self, ctx: ApiContext, **params: Any) -> Any:
        """Cached result for ``params``, for reuse by other handlers."""
        params = self._prepare(ctx, params)
        return await self._get(ctx, self.key_for(params), params)

    async def respond(self, ctx: ApiContext, **params: Any) -> JSONResponse:
        """Serve the cached result as an HTTP response."""
        params = self._prepare(ctx, params)
        key = self.key_for(params)
        data = await self._get(ctx, key, params)

        entry = ctx.cache.entry(key)
        generated_at = entry.computed_at if entry is not None else 0.0
        logger.debug("Endpoint served", endpoint=self.name, cache_key=key)
        return JSONResponse(
            content={
                "success": True,
                "data": data,
                "generatedTimeMs": int(generated_at * 1000),
            },
            headers={"Cache-Control": self.cache_control},
        )

    async def _get(self, ctx: ApiContext, key: str, params: Dict[str, Any]) -> Any:
        return await ctx.cache.get(
            key,
            lambda: self.handler(ctx, **params),
            max_age=self.max_age,
            min_time_to_stale=self.min_time_to_stale,
        )


def cached_endpoint(
    *,
    max_age: float,
    cache_key: Optional[CacheKey] = None,
    min_time_to_stale: Optional[float] = None,
    param_sanitizers: Optional[Dict[str, ParamSanitizer]] = None,
    validate: Optional[Validator] = None,
) -> Callable[[Handler], CachedEndpoint]:
    """Decorator form of ``CachedEndpoint``."""

    def decorator(handler: Handler) -> CachedEndpoint:
        return CachedEndpoint(
            handler,
            max_age=max_age,
            cache_key=cache_key,
            min_time_to_stale=min_time_to_stale,
            param_sanitizers=param_sanitizers,
            validate=validate,
        )

    return decorator
