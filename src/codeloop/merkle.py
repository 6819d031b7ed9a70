# merkle.py
# SHA-256 fingerprints for plans, diffs and observation patterns.
#
# An accepted plan is committed to a Merkle tree over the structural fields of
# its steps. The root is the plan's fingerprint, which the loop uses to spot a
# planner that keeps proposing the same thing. Steps are re-checked against
# their leaves before they execute so an accepted plan cannot drift mid-cycle.

import hashlib
import json

from codeloop.models import Plan, Step

EMPTY_FINGERPRINT = "empty"


def _sha256(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def fingerprint(content: str | None) -> str:
    """Hash of stripped content; blank or missing content is "empty"."""
    if content is None or not str(content).strip():
        return EMPTY_FINGERPRINT
    return _sha256(str(content).strip())


class PlanCommitment:
    """
    Merkle commitment to the steps of one plan.

    leaf   = SHA256(canonical JSON of the step's structural fields)
    parent = SHA256(left + right), the last node of an odd layer pairs with itself
    """

    # What a step does. `reason` and `step_id` are commentary and never hashed.
    STRUCTURAL_FIELDS = ("action", "path", "command", "content", "depends_on")

    def __init__(self, steps: list[Step]) -> None:
        if not steps:
            raise ValueError("Cannot commit to a plan with no steps.")
        self._leaves = [self.leaf(step) for step in steps]
        layer = list(self._leaves)
        while len(layer) > 1:
            if len(layer) % 2:
                layer.append(layer[-1])
            layer = [_sha256(left + right) for left, right in zip(layer[::2], layer[1::2])]
        self._root = layer[0]

    @classmethod
    def leaf(cls, step: Step) -> str:
        fields = {name: getattr(step, name) for name in cls.STRUCTURAL_FIELDS}
        return _sha256(json.dumps(fields, sort_keys=True, ensure_ascii=False))

    def matches(self, index: int, step: Step) -> bool:
        """True when `step` is exactly what was committed at position `index`."""
        return 0 <= index < len(self._leaves) and self.leaf(step) == self._leaves[index]

    @property
    def root(self) -> str:
        return self._root

    def __len__(self) -> int:
        return len(self._leaves)


def plan_fingerprint(plan: Plan) -> str:
    """Structural fingerprint of a plan. Two plans that do the same thing collide."""
    if not plan.steps:
        return EMPTY_FINGERPRINT
    return PlanCommitment(plan.steps).root
