"""Variable store: the flat slot array a compiled net runs against.

Every node owns two adjacent slots — its output value at an even index and
the derivative of the objective with respect to that value right after it:

    node k  ->  value slot 2k, derivative slot 2k + 1

Slots hold whatever the ops produce (numpy arrays, scalars, torch tensors
after a placement transfer). None means "never written".
"""

from typing import Any, Callable, Iterable, Sequence


def value_slot(position: int) -> int:
    """Value slot of the node at `position` in the compiled order."""
    return 2 * position


def der_slot(var: int) -> int:
    """Derivative slot paired with value slot `var`."""
    return var + 1


class VariableStore:
    """Indexed value/derivative slots, two per node."""

    def __init__(self, size: int) -> None:
        if size % 2:
            raise ValueError(f"Store size must be even (value/derivative pairs), got {size}")
        self._slots: list[Any] = [None] * size

    def __len__(self) -> int:
        return len(self._slots)

    def __getitem__(self, slot: int) -> Any:
        return self._slots[slot]

    def __setitem__(self, slot: int, value: Any) -> None:
        self._slots[slot] = value

    def __repr__(self) -> str:
        filled = sum(1 for v in self._slots if v is not None)
        return f"VariableStore({len(self._slots)} slots, {filled} set)"

    # --- Pairs ---

    def value(self, var: int) -> Any:
        return self._slots[var]

    def der(self, var: int) -> Any:
        """Derivative paired with value slot `var`."""
        return self._slots[der_slot(var)]

    # --- Bulk access ---

    def get_many(self, slots: Iterable[int]) -> list[Any]:
        return [self._slots[s] for s in slots]

    def set_many(self, slots: Sequence[int], values: Sequence[Any]) -> None:
        if len(slots) != len(values):
            raise ValueError(
                f"Got {len(values)} values for {len(slots)} slots"
            )
        for s, v in zip(slots, values):
            self._slots[s] = v

    # --- Derivative bookkeeping ---

    def accumulate(self, slot: int, value: Any) -> None:
        """Add `value` into a slot. An unset slot counts as zero.

        Always out of place: the stored object is never the one passed in,
        so later in-place updates can't leak into an op's return value.
        """
        current = self._slots[slot]
        if current is None:
            current = 0.0
        self._slots[slot] = current + value

    def is_zero(self, slot: int) -> bool:
        """True if the slot holds the scalar zero left by reset_ders()."""
        current = self._slots[slot]
        return isinstance(current, (int, float)) and current == 0

    def reset_ders(self, keep: Iterable[int] = ()) -> None:
        """Set every derivative slot to the scalar 0.0, except those in `keep`."""
        keep = set(keep)
        for slot in range(1, len(self._slots), 2):
            if slot not in keep:
                self._slots[slot] = 0.0

    # --- Whole-store operations ---

    def apply(self, fn: Callable[[Any], Any]) -> None:
        """Replace every slot's content with fn(content)."""
        self._slots = [fn(v) for v in self._slots]

    def copy(self) -> "VariableStore":
        """Shallow copy: a new slot list sharing the stored objects.

        Evaluation only ever replaces slot contents (apart from the sparse
        update, which writes into a derivative it allocated itself), so a
        copy can be evaluated independently of the original.
        """
        clone = VariableStore(len(self._slots))
        clone._slots = list(self._slots)
        return clone
