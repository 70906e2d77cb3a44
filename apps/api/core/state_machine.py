"""
Declarative state transitions.

Each stateful model declares a table of `Transition(from_state, to_state, checks)`.
`transition()` validates a proposed state against that table before the new
state is assigned:

- a newly created instance (nothing persisted yet) accepts any state
- otherwise the (persisted state, proposed state) pair must be declared
- declared checks run in order; the first one that raises aborts the
  transition and its error propagates with the instance's state untouched

Checks are read-only validators: `check(instance) -> None`, raising on failure.
"""
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

from sqlalchemy import inspect

from core.exceptions import InvalidTransitionError, LockedResourceError

Check = Callable[[object], None]


@dataclass(frozen=True)
class Transition:
    from_state: str
    to_state: str
    checks: List[Check] = field(default_factory=list)


def persisted_state(instance) -> Optional[str]:
    """The state value as last loaded from / flushed to the store (None if never persisted)."""
    insp = inspect(instance)
    if insp.transient or insp.pending:
        return None
    history = insp.attrs.state.history
    if history.deleted:
        return history.deleted[0]
    return instance.state


def transition(instance, transitions: Iterable[Transition], to_state: str) -> None:
    from_state = persisted_state(instance)
    if from_state is None:
        instance.state = to_state
        return
    if from_state == to_state:
        instance.state = to_state
        return

    match = next(
        (t for t in transitions if t.from_state == from_state and t.to_state == to_state),
        None,
    )
    if match is None:
        raise InvalidTransitionError(
            type(instance).__name__, str(instance.id), from_state, to_state
        )

    for check in match.checks:
        check(instance)

    instance.state = to_state


def ensure_unlocked(instance) -> None:
    """Refuse mutation of an entity owned by an external configuration owner."""
    locked_by = getattr(instance, "locked", None)
    if locked_by:
        raise LockedResourceError(type(instance).__name__, str(instance.id), locked_by)
