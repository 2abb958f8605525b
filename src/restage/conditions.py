"""Job conditions: predicates over a Trigger.

Conditions are small tagged variants that combine with ``&`` (and), ``|`` (or)
and ``~`` (not). Besides evaluating against a concrete trigger, every
condition can report which trigger kinds it could possibly admit. The job
selector uses that to tell "never runs on schedules" apart from "only runs on
schedules" without looking at job names or free-form strings.

Example:
    nightly = only_schedules()
    release = except_schedules() & only_branches("master")

    release.evaluate(trigger)                      # concrete decision
    release.excludes(TriggerKind.SCHEDULED)        # True
    nightly.restricts_to(TriggerKind.SCHEDULED)    # True

"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from .trigger import ALL_KINDS, Trigger, TriggerKind


class Condition:
    """Base class for job conditions."""

    def __and__(self, other: Condition) -> AndCondition:
        """Logical AND."""
        return AndCondition(self, other)

    def __or__(self, other: Condition) -> OrCondition:
        """Logical OR."""
        return OrCondition(self, other)

    def __invert__(self) -> NotCondition:
        """Logical NOT."""
        return NotCondition(self)

    def __bool__(self) -> bool:
        """Raise error - conditions are evaluated against a trigger, not truth-tested."""
        raise TypeError("Conditions cannot be used in Python control flow.\nUse condition.evaluate(trigger) instead.")

    def evaluate(self, trigger: Trigger) -> bool:
        """Decide whether the condition holds for `trigger`."""
        raise NotImplementedError

    def possible_kinds(self) -> frozenset[TriggerKind]:
        """
        Trigger kinds for which this condition can hold for some trigger.

        This is an over-approximation: a kind in the result may still be
        rejected by, e.g., a branch restriction.
        """
        raise NotImplementedError

    def excludes(self, kind: TriggerKind) -> bool:
        """True if the condition can never hold for triggers of `kind`."""
        return kind not in self.possible_kinds()

    def restricts_to(self, kind: TriggerKind) -> bool:
        """True if `kind` is the only trigger kind the condition admits."""
        return self.possible_kinds() == frozenset({kind})

    def restricted_branches(self) -> frozenset[str] | None:
        """Branch names this condition is limited to, or None if unrestricted."""
        return None


@dataclass(frozen=True, eq=False)
class Always(Condition):
    """Holds for every trigger."""

    def evaluate(self, trigger: Trigger) -> bool:
        return True

    def possible_kinds(self) -> frozenset[TriggerKind]:
        return ALL_KINDS

    def __repr__(self) -> str:
        return "always"


@dataclass(frozen=True, eq=False)
class KindIs(Condition):
    """Holds when the trigger is one of `kinds`."""

    kinds: frozenset[TriggerKind]

    def evaluate(self, trigger: Trigger) -> bool:
        return trigger.kind in self.kinds

    def possible_kinds(self) -> frozenset[TriggerKind]:
        return self.kinds

    def __repr__(self) -> str:
        names = ", ".join(sorted(k.value for k in self.kinds))
        return f"kind in ({names})"


@dataclass(frozen=True, eq=False)
class BranchIs(Condition):
    """Holds when the trigger's branch ref is one of `branches`."""

    branches: frozenset[str]

    def evaluate(self, trigger: Trigger) -> bool:
        return trigger.branch_ref in self.branches

    def possible_kinds(self) -> frozenset[TriggerKind]:
        return ALL_KINDS

    def restricted_branches(self) -> frozenset[str] | None:
        return self.branches

    def __repr__(self) -> str:
        return f"branch in ({', '.join(sorted(self.branches))})"


@dataclass(frozen=True, eq=False)
class AndCondition(Condition):
    """Logical AND of two conditions."""

    left: Condition
    right: Condition

    def evaluate(self, trigger: Trigger) -> bool:
        return self.left.evaluate(trigger) and self.right.evaluate(trigger)

    def possible_kinds(self) -> frozenset[TriggerKind]:
        return self.left.possible_kinds() & self.right.possible_kinds()

    def restricted_branches(self) -> frozenset[str] | None:
        left = self.left.restricted_branches()
        right = self.right.restricted_branches()
        if left is None:
            return right
        if right is None:
            return left
        return left & right

    def __repr__(self) -> str:
        return f"({self.left!r} & {self.right!r})"


@dataclass(frozen=True, eq=False)
class OrCondition(Condition):
    """Logical OR of two conditions."""

    left: Condition
    right: Condition

    def evaluate(self, trigger: Trigger) -> bool:
        return self.left.evaluate(trigger) or self.right.evaluate(trigger)

    def possible_kinds(self) -> frozenset[TriggerKind]:
        return self.left.possible_kinds() | self.right.possible_kinds()

    def restricted_branches(self) -> frozenset[str] | None:
        left = self.left.restricted_branches()
        right = self.right.restricted_branches()
        if left is None or right is None:
            return None
        return left | right

    def __repr__(self) -> str:
        return f"({self.left!r} | {self.right!r})"


@dataclass(frozen=True, eq=False)
class NotCondition(Condition):
    """Logical NOT of a condition."""

    operand: Condition

    def evaluate(self, trigger: Trigger) -> bool:
        return not self.operand.evaluate(trigger)

    def possible_kinds(self) -> frozenset[TriggerKind]:
        # Only a pure kind test can be complemented exactly
        if isinstance(self.operand, KindIs):
            return ALL_KINDS - self.operand.kinds
        return ALL_KINDS

    def __repr__(self) -> str:
        return f"(~{self.operand!r})"


ALWAYS = Always()


def kind_is(*kinds: TriggerKind) -> KindIs:
    """Condition admitting only the given trigger kinds."""
    return KindIs(frozenset(kinds))


def only_schedules() -> KindIs:
    """Condition for nightly jobs: scheduled triggers only."""
    return kind_is(TriggerKind.SCHEDULED)


def except_schedules() -> NotCondition:
    """Condition for jobs that must never run on a schedule."""
    return ~kind_is(TriggerKind.SCHEDULED)


def only_branches(*branches: str | Iterable[str]) -> BranchIs:
    """Condition restricting a job to the named branches."""
    names: set[str] = set()
    for branch in branches:
        if isinstance(branch, str):
            names.add(branch)
        else:
            names.update(branch)
    return BranchIs(frozenset(names))


def all_of(conditions: Iterable[Condition]) -> Condition:
    """AND together several conditions (ALWAYS for none)."""
    result: Condition | None = None
    for condition in conditions:
        result = condition if result is None else result & condition
    return result if result is not None else ALWAYS


def any_of(conditions: Iterable[Condition]) -> Condition:
    """OR together several conditions (ALWAYS for none)."""
    result: Condition | None = None
    for condition in conditions:
        result = condition if result is None else result | condition
    return result if result is not None else ALWAYS
