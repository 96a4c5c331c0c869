"""Error types for the feature engine.

Best-effort sequences (cleanups, handler-wide apply/delete, stage actions
that all get a chance to run) accumulate failures in an ErrorList and raise
a single MultiError at the end.
"""

from typing import Callable, Iterable, Optional, Type, TypeVar

E = TypeVar('E', bound=BaseException)


class FeatureError(Exception):
    """Base exception for feature engine errors."""


class ManifestError(FeatureError):
    """A manifest could not be loaded, rendered or validated."""


class StageError(FeatureError):
    """Failure of one pipeline stage, tagged with that stage's condition reason."""

    def __init__(self, reason: str, cause: BaseException):
        self.reason = reason
        self.cause = cause
        super().__init__(f"{reason}: {cause}")


class MultiError(FeatureError):
    """Ordered collection of errors raised as one.

    Nested MultiErrors are flattened so the list always holds leaf errors.
    """

    def __init__(self, errors: Iterable[BaseException]):
        self.errors: list[BaseException] = []
        for err in errors:
            if isinstance(err, MultiError):
                self.errors.extend(err.errors)
            else:
                self.errors.append(err)
        super().__init__(self._format())

    def _format(self) -> str:
        count = len(self.errors)
        noun = 'error' if count == 1 else 'errors'
        points = '\n\t'.join(f"* {err}" for err in self.errors)
        return f"{count} {noun} occurred:\n\t{points}"

    def find(self, error_type: Type[E]) -> Optional[E]:
        """Return the first contained error of the given type, if any."""
        for err in self.errors:
            if isinstance(err, error_type):
                return err
        return None

    def __len__(self) -> int:
        return len(self.errors)


class ErrorList:
    """Accumulator for best-effort execution."""

    def __init__(self):
        self._errors: list[BaseException] = []

    def append(self, err: Optional[BaseException]) -> None:
        if err is not None:
            self._errors.append(err)

    def collect(self, fn: Callable, *args, **kwargs) -> bool:
        """Call fn, recording any exception it raises. Returns True on success."""
        try:
            fn(*args, **kwargs)
        except Exception as e:
            self._errors.append(e)
            return False
        return True

    def error(self) -> Optional[MultiError]:
        """None when nothing failed, otherwise a MultiError of everything collected."""
        if not self._errors:
            return None
        return MultiError(self._errors)

    def raise_if_any(self) -> None:
        if (err := self.error()) is not None:
            raise err

    def __bool__(self) -> bool:
        return bool(self._errors)

    def __len__(self) -> int:
        return len(self._errors)
