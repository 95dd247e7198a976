from dataclasses import dataclass
from typing import Generic, TypeVar, Union

from puosu.errors import PuosuError

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    error: PuosuError

    @property
    def message(self) -> str:
        return self.error.message


Result = Union[Ok[T], Err]
