from collections.abc import Awaitable
from pathlib import Path
from typing import Callable, TypeVar, Union

T = TypeVar("T")

PathType = Union[str, Path]
Subscriber = Callable[[T], None]
Unsubscribe = Callable[[], None]
Command = Callable[[], Awaitable[T]]
DataConsumer = Callable[[bytes], None]
