"""
TuningPlan - the fully derived set of effects for one run.

A plan carries:
- named parameters with the precedence layer and rule that produced them
- the sysctl entries written to the drop-in (for drift checks)
- an ordered list of effects (scalar write, file write, file append, command)

Plans are built by the pure functions in tuning/network.py and
tuning/system.py, frozen before the executor consumes them, and persisted
as JSON so --verify works across process restarts.
"""

import json
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .errors import PlanConflictError, PlanFrozenError


class Layer(IntEnum):
    """Precedence of a parameter source (higher wins)."""
    PROFILE = 0
    CLOUD_TIER = 1
    FLAG = 2
    USER = 3


class EffectKind(str, Enum):
    SCALAR = "scalar"
    FILE_WRITE = "file_write"
    FILE_APPEND = "file_append"
    COMMAND = "command"


@dataclass(frozen=True)
class Effect:
    """One side effect against the host."""
    kind: EffectKind
    target: str = ""                       # Absolute host path (empty for commands)
    value: str = ""                        # Scalar value or file content
    argv: Tuple[str, ...] = ()
    label: str = ""                        # Short status text
    verify: bool = True                    # False for write-only triggers

    def describe(self) -> str:
        if self.kind == EffectKind.COMMAND:
            return " ".join(self.argv)
        return self.target

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "target": self.target,
            "value": self.value,
            "argv": list(self.argv),
            "label": self.label,
            "verify": self.verify,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Effect":
        return cls(
            kind=EffectKind(data["kind"]),
            target=data.get("target", ""),
            value=data.get("value", ""),
            argv=tuple(data.get("argv", ())),
            label=data.get("label", ""),
            verify=data.get("verify", True),
        )


@dataclass
class ParamEntry:
    value: Any
    layer: Layer
    rule: str


@dataclass
class TuningPlan:
    """Derived output of one tool for one host."""
    tool: str                              # "network" or "system"
    profile: str
    flags: Dict[str, Any] = field(default_factory=dict)
    params: Dict[str, ParamEntry] = field(default_factory=dict)
    sysctl: Dict[str, str] = field(default_factory=dict)
    effects: List[Effect] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    _frozen: bool = field(default=False, repr=False, compare=False)

    # =========================================================================
    # Building
    # =========================================================================

    def _check_mutable(self):
        if self._frozen:
            raise PlanFrozenError(f"{self.tool} plan is frozen")

    def set_param(self, name: str, value: Any, layer: Layer, rule: str) -> Any:
        """
        Record a named parameter.

        A higher layer replaces a lower one; a lower layer is ignored.
        Two different rules at the same layer are a conflict.

        Returns:
            The effective value after precedence
        """
        self._check_mutable()
        current = self.params.get(name)
        if current is None or layer > current.layer:
            self.params[name] = ParamEntry(value=value, layer=layer, rule=rule)
        elif layer == current.layer and rule != current.rule:
            raise PlanConflictError(
                f"{name}: rules '{current.rule}' and '{rule}' both set "
                f"it at layer {layer.name}"
            )
        elif layer == current.layer:
            current.value = value
        return self.params[name].value

    def param(self, name: str, default: Any = None) -> Any:
        entry = self.params.get(name)
        return entry.value if entry else default

    def add_sysctl(self, key: str, value: Any):
        self._check_mutable()
        self.sysctl[key] = str(value)

    def add_effect(self, effect: Effect) -> Effect:
        self._check_mutable()
        self.effects.append(effect)
        return effect

    def write_value(self, path: str, value: Any, label: str = "", verify: bool = True) -> Effect:
        return self.add_effect(Effect(EffectKind.SCALAR, target=path, value=str(value),
                                      label=label, verify=verify))

    def write_file(self, path: str, content: str, label: str = "") -> Effect:
        return self.add_effect(Effect(EffectKind.FILE_WRITE, target=path, value=content,
                                      label=label))

    def append_file(self, path: str, content: str, label: str = "") -> Effect:
        return self.add_effect(Effect(EffectKind.FILE_APPEND, target=path, value=content,
                                      label=label))

    def run(self, *argv: str, label: str = "") -> Effect:
        return self.add_effect(Effect(EffectKind.COMMAND, argv=tuple(str(a) for a in argv),
                                      label=label))

    def note(self, message: str):
        self._check_mutable()
        self.notes.append(message)

    def freeze(self) -> "TuningPlan":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    # =========================================================================
    # Queries
    # =========================================================================

    def file_targets(self) -> List[str]:
        """Paths written or appended, in first-touch order."""
        seen: List[str] = []
        for effect in self.effects:
            if effect.kind in (EffectKind.FILE_WRITE, EffectKind.FILE_APPEND):
                if effect.target not in seen:
                    seen.append(effect.target)
        return seen

    def expected_files(self) -> Dict[str, str]:
        """Final content of every generated file after all writes and appends."""
        contents: Dict[str, str] = {}
        for effect in self.effects:
            if effect.kind == EffectKind.FILE_WRITE:
                contents[effect.target] = effect.value
            elif effect.kind == EffectKind.FILE_APPEND:
                contents[effect.target] = contents.get(effect.target, "") + effect.value
        return contents

    def scalars(self) -> List[Effect]:
        return [e for e in self.effects if e.kind == EffectKind.SCALAR]

    def commands(self) -> List[Effect]:
        return [e for e in self.effects if e.kind == EffectKind.COMMAND]

    # =========================================================================
    # Persistence
    # =========================================================================

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool": self.tool,
            "profile": self.profile,
            "flags": dict(self.flags),
            "params": {
                name: {"value": p.value, "layer": p.layer.name, "rule": p.rule}
                for name, p in self.params.items()
            },
            "sysctl": dict(self.sysctl),
            "effects": [e.to_dict() for e in self.effects],
            "notes": list(self.notes),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TuningPlan":
        plan = cls(
            tool=data["tool"],
            profile=data["profile"],
            flags=dict(data.get("flags", {})),
            params={
                name: ParamEntry(value=p["value"], layer=Layer[p["layer"]], rule=p["rule"])
                for name, p in data.get("params", {}).items()
            },
            sysctl=dict(data.get("sysctl", {})),
            effects=[Effect.from_dict(e) for e in data.get("effects", [])],
            notes=list(data.get("notes", [])),
        )
        return plan.freeze()

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            f.write(self.to_json())

    @classmethod
    def load(cls, path: Path) -> "TuningPlan":
        with open(path) as f:
            return cls.from_dict(json.load(f))

    @classmethod
    def load_optional(cls, path: Path) -> Optional["TuningPlan"]:
        if not path.exists():
            return None
        return cls.load(path)
