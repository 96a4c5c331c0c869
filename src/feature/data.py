"""Feature data bag.

Data providers populate the bag before any other stage runs; templates
render against it and programmatic actions read typed values back out.
"""

from typing import TYPE_CHECKING, Any, Callable, Iterator, Type, TypeVar

from feature.errors import FeatureError

if TYPE_CHECKING:
    from feature.feature import Feature

T = TypeVar('T')


class DataError(FeatureError):
    """Missing key or value of an unexpected type."""


class DataBag:
    """String-keyed store of heterogeneous values with checked reads."""

    def __init__(self, initial: dict[str, Any] | None = None):
        self._values: dict[str, Any] = dict(initial or {})

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value

    def get(self, key: str, expected: Type[T]) -> T:
        """Get a value, checking its type.

        Raises:
            DataError: If the key is absent or the value is not an `expected`
        """
        if key not in self._values:
            raise DataError(f"key {key} not found in feature data")
        value = self._values[key]
        if not isinstance(value, expected):
            raise DataError(
                f"value for key {key} is not of type {expected.__name__} "
                f"(got {type(value).__name__})"
            )
        return value

    def as_dict(self) -> dict[str, Any]:
        """Shallow copy used as the template rendering context."""
        return dict(self._values)

    def __contains__(self, key: str) -> bool:
        return key in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)


def entry(key: str, provider: Callable[['Feature'], Any]) -> Callable[['Feature'], None]:
    """Build a data provider storing provider(feature) under key."""
    def _load(f: 'Feature') -> None:
        f.data.set(key, provider(f))
    return _load


def value(v: Any) -> Callable[['Feature'], Any]:
    """Provider returning a fixed value, for use with entry()."""
    return lambda _f: v
