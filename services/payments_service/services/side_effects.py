"""Post-commit side effects, each isolated from the others.

Database-bound effects share the request's session and run one after another;
effects that only talk to external endpoints run concurrently. A failure is
logged and reported, never raised.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from libs.common.logging import get_logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


@dataclass
class SideEffect:
    name: str
    run: Callable[[], Awaitable[Any]]
    uses_db: bool = False


@dataclass
class SideEffectResult:
    name: str
    succeeded: bool
    error: Optional[str] = None


def _failed(effect: SideEffect, exc: BaseException, context: dict) -> SideEffectResult:
    logger.error(
        "Side effect %s failed: %s",
        effect.name,
        exc,
        exc_info=(type(exc), exc, exc.__traceback__),
        extra={"extra_fields": {**context, "side_effect": effect.name}},
    )
    return SideEffectResult(name=effect.name, succeeded=False, error=str(exc))


async def _rollback(db: AsyncSession, effect: SideEffect, context: dict) -> None:
    try:
        await db.rollback()
    except SQLAlchemyError:
        logger.exception(
            "Rollback after side effect %s failed",
            effect.name,
            extra={"extra_fields": {**context, "side_effect": effect.name}},
        )


async def run_side_effects(
    effects: list[SideEffect],
    *,
    db: Optional[AsyncSession] = None,
    context: Optional[dict] = None,
) -> list[SideEffectResult]:
    """Run every effect and report each outcome in the order given."""
    context = context or {}
    results: dict[str, SideEffectResult] = {}

    for effect in (e for e in effects if e.uses_db):
        try:
            await effect.run()
        except Exception as exc:
            if db is not None:
                await _rollback(db, effect, context)
            results[effect.name] = _failed(effect, exc, context)
        else:
            results[effect.name] = SideEffectResult(name=effect.name, succeeded=True)

    external = [e for e in effects if not e.uses_db]
    outcomes = await asyncio.gather(
        *(effect.run() for effect in external), return_exceptions=True
    )
    for effect, outcome in zip(external, outcomes):
        if isinstance(outcome, BaseException):
            results[effect.name] = _failed(effect, outcome, context)
        else:
            results[effect.name] = SideEffectResult(name=effect.name, succeeded=True)

    ordered = [results[e.name] for e in effects]
    logger.info(
        "Side effects finished: %d ok, %d failed",
        sum(1 for r in ordered if r.succeeded),
        sum(1 for r in ordered if not r.succeeded),
        extra={
            "extra_fields": {
                **context,
                "side_effects": {r.name: r.succeeded for r in ordered},
            }
        },
    )
    return ordered
