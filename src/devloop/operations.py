"""Operation definitions and their versioned registry.

The controller performs five kinds of operation: acquire, execute, evaluate,
fix and redesign. How each one is carried out (task name, prompt template,
category, priority, acquisition limit, gates checked on evaluation) is data,
held in an OperationDefinition. The execute prompt is appended to every task
prompt.

Compiled-in defaults are always available. Overrides live in operations.yaml;
a new version can be proposed at any time but is only used after an explicit
approve() call, so definitions never change themselves.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .task_store import WorkCategory, now_iso

logger = logging.getLogger(__name__)


class OperationKind(str, Enum):
    ACQUIRE = "acquire"
    EXECUTE = "execute"
    EVALUATE = "evaluate"
    FIX = "fix"
    REDESIGN = "redesign"


class OperationRegistryError(Exception):
    """Exception raised for operation registry errors."""

    pass


def parse_gate_names(value: Any) -> Tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        value = value.split(",")
    return tuple(str(name).strip() for name in value if str(name).strip())


@dataclass(frozen=True)
class OperationDefinition:
    """How the controller performs one kind of operation."""

    kind: OperationKind
    version: int = 0
    description: str = ""
    task_name: str = ""
    prompt: str = ""
    category: WorkCategory = WorkCategory.CODING
    priority: int = 2
    limit: int = 10
    gates: Tuple[str, ...] = ()
    approved: bool = False
    approved_by: Optional[str] = None
    approved_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["kind"] = self.kind.value
        d["category"] = self.category.value
        d["gates"] = list(self.gates)
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> OperationDefinition:
        kind = OperationKind(data["kind"])
        default = DEFAULT_DEFINITIONS[kind]
        return cls(
            kind=kind,
            version=int(data.get("version", 1)),
            description=data.get("description", default.description),
            task_name=data.get("task_name", default.task_name),
            prompt=data.get("prompt", default.prompt),
            category=WorkCategory(data.get("category", default.category.value)),
            priority=int(data.get("priority", default.priority)),
            limit=int(data.get("limit", default.limit)),
            gates=parse_gate_names(data.get("gates")) or default.gates,
            approved=bool(data.get("approved", False)),
            approved_by=data.get("approved_by"),
            approved_at=data.get("approved_at"),
        )


FIX_PROMPT = """\
The shared codebase is failing its quality gates (cycle {{ cycle }}).

Failing gate: {{ failing_gate }}

Gate output:
```
{{ diagnostic }}
```

Make the smallest change that gets every gate passing again. Do not add
features and do not weaken or delete tests to make them pass.
"""

REDESIGN_PROMPT = """\
The codebase is degrading (cycle {{ cycle }}).

Health findings:
{% for finding in findings %}- {{ finding }}
{% endfor %}
Restructure the code to address these findings without changing behaviour.
Keep every quality gate passing.
"""

EXECUTE_PROMPT = """\
Stay within the scope of this task and leave unrelated code untouched.
"""

DEFAULT_DEFINITIONS: Dict[OperationKind, OperationDefinition] = {
    OperationKind.ACQUIRE: OperationDefinition(
        kind=OperationKind.ACQUIRE,
        description="Propose new tasks from the backlog when no work is available.",
        category=WorkCategory.PLANNING,
        limit=5,
        approved=True,
        approved_by="builtin",
    ),
    OperationKind.EXECUTE: OperationDefinition(
        kind=OperationKind.EXECUTE,
        description="Claim and run available tasks one at a time.",
        prompt=EXECUTE_PROMPT,
        approved=True,
        approved_by="builtin",
    ),
    OperationKind.EVALUATE: OperationDefinition(
        kind=OperationKind.EVALUATE,
        description="Run gates on the shared tree and assess path health.",
        gates=("tests", "lint", "build"),
        approved=True,
        approved_by="builtin",
    ),
    OperationKind.FIX: OperationDefinition(
        kind=OperationKind.FIX,
        description="Repair failing tests or lint on the shared tree.",
        task_name="Fix failing quality gates (cycle {{ cycle }}, attempt {{ attempt }})",
        prompt=FIX_PROMPT,
        priority=3,
        approved=True,
        approved_by="builtin",
    ),
    OperationKind.REDESIGN: OperationDefinition(
        kind=OperationKind.REDESIGN,
        description="Restructure the code when growth or quality trends degrade.",
        task_name="Redesign degraded code paths (cycle {{ cycle }})",
        prompt=REDESIGN_PROMPT,
        priority=3,
        approved=True,
        approved_by="builtin",
    ),
}


class OperationRegistry:
    """Versioned operation definitions with an explicit approval step."""

    def __init__(self, path: Optional[Path] = None):
        """Initialize the registry.

        Args:
            path: operations.yaml holding overrides. None keeps everything in memory.
        """
        self.path = Path(path) if path else None
        self._versions: Dict[OperationKind, List[OperationDefinition]] = {k: [] for k in OperationKind}

    def load(self) -> None:
        """Load overrides from operations.yaml, if present."""
        if self.path is None or not self.path.exists():
            return
        try:
            with open(self.path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise OperationRegistryError(f"Failed to load {self.path}: {e}") from e

        self._versions = {k: [] for k in OperationKind}
        for entry in data.get("operations", []) or []:
            try:
                definition = OperationDefinition.from_dict(entry)
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping invalid operation entry {entry!r}: {e}")
                continue
            self._versions[definition.kind].append(definition)
        logger.debug(f"Loaded operation overrides from {self.path}")

    def save(self) -> None:
        if self.path is None:
            return
        entries = [d.to_dict() for kind in OperationKind for d in self._versions[kind]]
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            yaml.safe_dump({"operations": entries}, f, sort_keys=False)

    def versions(self, kind: OperationKind) -> List[OperationDefinition]:
        return sorted(self._versions[kind], key=lambda d: d.version)

    def resolve(self, kind: OperationKind) -> OperationDefinition:
        """Return the highest approved version, or the compiled-in default."""
        approved = [d for d in self._versions[kind] if d.approved]
        if approved:
            return max(approved, key=lambda d: d.version)
        return DEFAULT_DEFINITIONS[kind]

    def propose(self, definition: OperationDefinition) -> OperationDefinition:
        """Store a new, unapproved version of a definition."""
        existing = [d.version for d in self._versions[definition.kind]]
        version = max(existing + [DEFAULT_DEFINITIONS[definition.kind].version]) + 1
        proposed = replace(definition, version=version, approved=False, approved_by=None, approved_at=None)
        self._versions[definition.kind].append(proposed)
        self.save()
        logger.info(f"Proposed {definition.kind.value} operation v{version} (awaiting approval)")
        return proposed

    def approve(self, kind: OperationKind, version: int, approver: str) -> OperationDefinition:
        """Approve a proposed version so resolve() starts returning it.

        Raises:
            OperationRegistryError: No such version, or no approver given.
        """
        if not approver:
            raise OperationRegistryError("An approver is required")
        versions = self._versions[kind]
        for i, definition in enumerate(versions):
            if definition.version == version:
                approved = replace(definition, approved=True, approved_by=approver, approved_at=now_iso())
                versions[i] = approved
                self.save()
                logger.info(f"{kind.value} operation v{version} approved by {approver}")
                return approved
        raise OperationRegistryError(f"No {kind.value} operation version {version}")

    def list(self) -> List[OperationDefinition]:
        """Resolved definition for every kind."""
        return [self.resolve(kind) for kind in OperationKind]
