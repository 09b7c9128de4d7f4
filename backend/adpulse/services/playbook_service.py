"""
Playbook Service: YAML rule sets for the recommendation engine.

A playbook says: for these providers and entity levels, when all of these
metric conditions hold (and none of the `none` conditions do), propose these
actions. Files live in settings.playbooks_dir and are reloaded when their
mtime changes.
"""

import logging
import os
from pathlib import Path
from typing import Any, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from adpulse.config import get_settings

logger = logging.getLogger(__name__)

Operator = Literal[">", ">=", "<", "<=", "=", "!=", "in", "not_in", "between"]


class Condition(BaseModel):
    metric: str
    op: Operator
    value: Any = None


class ConditionGroup(BaseModel):
    all: list[Condition] = Field(default_factory=list)
    none: list[Condition] = Field(default_factory=list)


class AppliesTo(BaseModel):
    providers: list[str] = Field(default_factory=lambda: ["meta", "google"])
    levels: list[str] = Field(default_factory=lambda: ["campaign", "ad_group", "ad"])
    objectives: Optional[list[str]] = None


class PlaybookAction(BaseModel):
    type: str
    target: Optional[str] = None
    change_pct: Optional[float] = None
    params: dict = Field(default_factory=dict)
    guardrails: dict = Field(default_factory=dict)


class Playbook(BaseModel):
    key: str
    name: str
    description_md: str = ""
    applies_to: AppliesTo = Field(default_factory=AppliesTo)
    conditions: ConditionGroup = Field(default_factory=ConditionGroup)
    actions: list[PlaybookAction] = Field(default_factory=list)
    explanation_template: str = ""
    risk_notes: str = ""
    priority: Literal["low", "medium", "high", "critical"] = "medium"
    enabled: bool = True
    tags: list[str] = Field(default_factory=list)

    @field_validator("conditions", mode="before")
    @classmethod
    def _list_means_all(cls, value):
        # A bare list of conditions is shorthand for {all: [...]}
        if isinstance(value, list):
            return {"all": value}
        return value or {}

    def applies(self, provider: str, level: str, objective: Optional[str] = None) -> bool:
        if provider not in self.applies_to.providers or level not in self.applies_to.levels:
            return False
        if self.applies_to.objectives and objective is not None:
            return objective.lower() in [o.lower() for o in self.applies_to.objectives]
        return True

    @property
    def condition_count(self) -> int:
        return len(self.conditions.all) + len(self.conditions.none)


# ══════════════════════════════════════════════════════════════════════
#  CONDITION EVALUATION
# ══════════════════════════════════════════════════════════════════════

def _number(value) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.rstrip("%"))
        except ValueError:
            return None
    return None


def evaluate_condition(condition: Condition, metrics: dict) -> bool:
    """
    Compare metrics[condition.metric] with condition.value.
    A missing metric or a value that cannot be compared evaluates to False.
    """
    if condition.metric not in metrics:
        return False
    actual = metrics[condition.metric]
    expected = condition.value
    op = condition.op

    if op in ("in", "not_in"):
        if not isinstance(expected, (list, tuple)):
            return False
        found = actual in expected
        return found if op == "in" else not found

    if op in ("=", "!="):
        a, e = _number(actual), _number(expected)
        equal = a == e if a is not None and e is not None else actual == expected
        return equal if op == "=" else not equal

    a = _number(actual)
    if a is None:
        return False
    if op == "between":
        if not isinstance(expected, (list, tuple)) or len(expected) != 2:
            return False
        low, high = _number(expected[0]), _number(expected[1])
        if low is None or high is None:
            return False
        return low <= a <= high

    e = _number(expected)
    if e is None:
        return False
    if op == ">":
        return a > e
    if op == ">=":
        return a >= e
    if op == "<":
        return a < e
    return a <= e


def evaluate_playbook(playbook: Playbook, metrics: dict) -> tuple[bool, float]:
    """
    Returns (matched, confidence). `all` conditions must hold, `none`
    conditions must each fail. Confidence is the fraction of satisfied
    conditions, 0.5 for a playbook with no conditions.
    """
    results = [evaluate_condition(c, metrics) for c in playbook.conditions.all]
    results += [not evaluate_condition(c, metrics) for c in playbook.conditions.none]
    if not results:
        return True, 0.5
    return all(results), round(sum(results) / len(results), 4)


# ══════════════════════════════════════════════════════════════════════
#  REPOSITORY
# ══════════════════════════════════════════════════════════════════════

def load_playbook_file(path: Union[str, Path]) -> Playbook:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")
    data.setdefault("key", Path(path).stem)
    return Playbook.model_validate(data)


class PlaybookRepository:
    """Playbooks keyed by `key`, loaded from one directory of YAML files."""

    def __init__(self, directory: Optional[Union[str, Path]] = None):
        self.directory = Path(directory or get_settings().playbooks_dir)
        self._playbooks: dict[str, Playbook] = {}
        self._mtimes: dict[Path, float] = {}
        self._keys_by_file: dict[Path, str] = {}

    def _files(self) -> list[Path]:
        if not self.directory.is_dir():
            logger.warning(f"Playbooks directory not found: {self.directory}")
            return []
        return sorted(p for p in self.directory.iterdir() if p.suffix in (".yaml", ".yml"))

    def reload(self) -> int:
        """Re-read changed files, drop removed ones. Returns the number of playbooks loaded."""
        files = self._files()
        for gone in set(self._mtimes) - set(files):
            self._mtimes.pop(gone, None)
            key = self._keys_by_file.pop(gone, None)
            if key:
                self._playbooks.pop(key, None)

        for path in files:
            mtime = os.path.getmtime(path)
            if self._mtimes.get(path) == mtime:
                continue
            self._mtimes[path] = mtime
            try:
                playbook = load_playbook_file(path)
            except (OSError, yaml.YAMLError, ValidationError, ValueError) as e:
                logger.error(f"Skipping invalid playbook {path.name}: {e}")
                old_key = self._keys_by_file.pop(path, None)
                if old_key:
                    self._playbooks.pop(old_key, None)
                continue
            old_key = self._keys_by_file.get(path)
            if old_key and old_key != playbook.key:
                self._playbooks.pop(old_key, None)
            self._playbooks[playbook.key] = playbook
            self._keys_by_file[path] = playbook.key
            logger.info(f"Loaded playbook {playbook.key} from {path.name}")
        return len(self._playbooks)

    def get(self, key: str) -> Optional[Playbook]:
        self.reload()
        return self._playbooks.get(key)

    def enabled(self, provider: Optional[str] = None) -> list[Playbook]:
        self.reload()
        return [
            p for p in self._playbooks.values()
            if p.enabled and (provider is None or provider in p.applies_to.providers)
        ]

    def all(self) -> list[Playbook]:
        self.reload()
        return list(self._playbooks.values())
