"""
Stage results for the token exchange chain

Each hop returns Ok(value) or Failure(error) instead of raising, so the chain
can be composed left-to-right and stop at the first failed stage.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Iterable, TypeVar, Union

from .errors import ExchangeError

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Failure:
    error: ExchangeError

    @property
    def ok(self) -> bool:
        return False

    def unwrap(self):
        raise self.error


HopResult = Union[Ok[T], Failure]
Stage = Callable[[Any], Awaitable["HopResult[Any]"]]


async def run_stages(initial: Any, stages: Iterable[Stage]) -> "HopResult[Any]":
    """Feed each stage the previous stage's value; short-circuit on the first Failure"""
    result: HopResult[Any] = Ok(initial)
    for stage in stages:
        result = await stage(result.value)
        if not result.ok:
            return result
    return result
