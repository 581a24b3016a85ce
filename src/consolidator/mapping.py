"""
Entity mapping table: per-entity-type rules for turning legacy records into
target records, and the order entity types must be migrated in.

A rule describes:
    - field renames (legacy name -> target name)
    - defaults for fields missing in legacy data
    - required fields (checked by integrity validation)
    - foreign keys (field -> referenced entity type)
    - the typed shape the transformed record must satisfy

``EntityMappingTable.transform`` is pure and deterministic. Records without
an id receive a name-based UUID derived from their content (and, for
identical copies, their occurrence index), so re-running a migration
regenerates the same ids and the target's duplicate-key check turns the
re-run into a no-op. Transforming an already transformed record
returns it unchanged.
"""

from __future__ import annotations

import copy
import json
from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any
from uuid import UUID, uuid5

from pydantic import ValidationError

from consolidator.entities import (
    CaseRecord,
    ClientRecord,
    CourtRecord,
    DocumentRecord,
    EmployeeRecord,
    EntityModel,
    HearingRecord,
    JudgeRecord,
    NoticeRecord,
    ReplyRecord,
    TaskRecord,
)
from consolidator.exceptions import TransformError
from consolidator.models import EntityRecord

GENERATED_ID_NAMESPACE = UUID("8f4b7c1e-2d3a-5b6c-9e0f-1a2b3c4d5e6f")
"""Namespace for ids generated from legacy record content."""

COMMON_RENAMES: Mapping[str, str] = MappingProxyType(
    {"createdAt": "created_at", "updatedAt": "updated_at"}
)


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _canonical_json(entity_type: str, record: EntityRecord) -> str:
    try:
        return json.dumps(record, sort_keys=True, default=str)
    except (TypeError, ValueError) as e:
        raise TransformError(entity_type, f"record is not serialisable: {e}") from e


@dataclass(frozen=True)
class EntityMappingRule:
    """
    Mapping rules for one entity type.

    Attributes:
        entity_type: Collection name the rule applies to.
        model: Typed shape transformed records are validated against.
        renames: Legacy field name -> target field name (COMMON_RENAMES are
            always applied too).
        defaults: Target field -> value used when the field is missing or empty.
        required_fields: Fields that must be present and non-empty.
        foreign_keys: Target field -> referenced entity type.
    """

    entity_type: str
    model: type[EntityModel] = EntityModel
    renames: Mapping[str, str] = field(default_factory=dict)
    defaults: Mapping[str, Any] = field(default_factory=dict)
    required_fields: tuple[str, ...] = ()
    foreign_keys: Mapping[str, str] = field(default_factory=dict)

    @property
    def all_renames(self) -> dict[str, str]:
        """Common renames merged with this rule's renames."""
        return {**COMMON_RENAMES, **self.renames}

    @property
    def depends_on(self) -> set[str]:
        """Entity types this one references, self-references excluded."""
        return {ref for ref in self.foreign_keys.values() if ref != self.entity_type}


DEFAULT_MAPPING_RULES: tuple[EntityMappingRule, ...] = (
    EntityMappingRule(
        entity_type="employees",
        model=EmployeeRecord,
        renames={
            "name": "full_name",
            "fullName": "full_name",
            "employeeCode": "employee_code",
            "reportingTo": "reporting_to",
            "managerId": "manager_id",
            "dateOfJoining": "date_of_joining",
            "confirmationDate": "confirmation_date",
        },
        defaults={"role": "Staff", "department": "General", "status": "active"},
        required_fields=("full_name",),
        foreign_keys={"reporting_to": "employees", "manager_id": "employees"},
    ),
    EntityMappingRule(
        entity_type="courts",
        model=CourtRecord,
        renames={"courtName": "name"},
        required_fields=("name",),
    ),
    EntityMappingRule(
        entity_type="judges",
        model=JudgeRecord,
        renames={"courtId": "court_id"},
        required_fields=("name",),
        foreign_keys={"court_id": "courts"},
    ),
    EntityMappingRule(
        entity_type="clients",
        model=ClientRecord,
        renames={"name": "display_name", "displayName": "display_name"},
        defaults={"status": "active"},
        required_fields=("display_name",),
    ),
    EntityMappingRule(
        entity_type="cases",
        model=CaseRecord,
        renames={
            "clientId": "client_id",
            "caseNumber": "case_number",
            "courtId": "court_id",
            "assignedTo": "assigned_to",
            "noticeDate": "notice_date",
            "nextHearingDate": "next_hearing_date",
        },
        defaults={"status": "open", "priority": "Medium", "title": "Untitled case"},
        required_fields=("title", "client_id"),
        foreign_keys={"client_id": "clients", "court_id": "courts"},
    ),
    EntityMappingRule(
        entity_type="notices",
        model=NoticeRecord,
        renames={
            "noticeNumber": "notice_number",
            "caseId": "case_id",
            "clientId": "client_id",
            "noticeDate": "notice_date",
            "dueDate": "due_date",
        },
        defaults={"status": "received"},
        foreign_keys={"case_id": "cases", "client_id": "clients"},
    ),
    EntityMappingRule(
        entity_type="replies",
        model=ReplyRecord,
        renames={"noticeId": "notice_id", "caseId": "case_id", "replyDate": "reply_date"},
        required_fields=("notice_id",),
        foreign_keys={"notice_id": "notices", "case_id": "cases"},
    ),
    EntityMappingRule(
        entity_type="hearings",
        model=HearingRecord,
        renames={
            "caseId": "case_id",
            "courtId": "court_id",
            "judgeId": "judge_id",
            "hearingDate": "hearing_date",
            "nextHearingDate": "next_hearing_date",
        },
        defaults={"status": "scheduled"},
        required_fields=("case_id", "hearing_date"),
        foreign_keys={"case_id": "cases", "court_id": "courts", "judge_id": "judges"},
    ),
    EntityMappingRule(
        entity_type="tasks",
        model=TaskRecord,
        renames={
            "caseId": "case_id",
            "hearingId": "hearing_id",
            "assignedTo": "assigned_to",
            "dueDate": "due_date",
            "completedDate": "completed_date",
        },
        defaults={"status": "Not Started", "priority": "Medium"},
        required_fields=("title",),
        foreign_keys={"case_id": "cases", "hearing_id": "hearings"},
    ),
    EntityMappingRule(
        entity_type="documents",
        model=DocumentRecord,
        renames={
            "fileName": "file_name",
            "filePath": "file_path",
            "fileType": "file_type",
            "fileSize": "file_size",
            "caseId": "case_id",
            "hearingId": "hearing_id",
            "taskId": "task_id",
            "clientId": "client_id",
            "folderId": "folder_id",
            "parentDocumentId": "parent_document_id",
            "reviewDate": "review_date",
        },
        required_fields=("file_name",),
        foreign_keys={
            "case_id": "cases",
            "hearing_id": "hearings",
            "task_id": "tasks",
            "client_id": "clients",
            "parent_document_id": "documents",
        },
    ),
)


class EntityMappingTable:
    """
    Static mapping rules for every known entity type.

    Entity types without a rule are handled with a pass-through rule
    (common renames, generated ids, timestamp canonicalisation only) so
    that unknown legacy collections are still migrated rather than dropped.

    Example:
        >>> table = EntityMappingTable()
        >>> table.dependency_order()[:4]
        ['employees', 'courts', 'judges', 'clients']
        >>> table.transform("clients", {"id": "c1", "name": "Acme"})
        {'id': 'c1', 'display_name': 'Acme', 'status': 'active'}
    """

    def __init__(self, rules: Iterable[EntityMappingRule] = DEFAULT_MAPPING_RULES) -> None:
        """
        Initialize the mapping table.

        Args:
            rules: Mapping rules, in the preferred migration order.

        Raises:
            ValueError: If entity types repeat, a foreign key references an
                unknown entity type, or dependencies between types are cyclic.
        """
        self._rules: dict[str, EntityMappingRule] = {}
        for rule in rules:
            if rule.entity_type in self._rules:
                raise ValueError(f"Duplicate mapping rule for {rule.entity_type!r}")
            self._rules[rule.entity_type] = rule

        for rule in self._rules.values():
            unknown = rule.depends_on - self._rules.keys()
            if unknown:
                raise ValueError(
                    f"{rule.entity_type!r} references unknown entity types: {sorted(unknown)}"
                )

        self._order = self._topological_order()

    @property
    def entity_types(self) -> list[str]:
        """Entity types with an explicit rule, in declaration order."""
        return list(self._rules)

    def rule_for(self, entity_type: str) -> EntityMappingRule:
        """
        Get the rule for an entity type.

        Args:
            entity_type: Collection name.

        Returns:
            The explicit rule, or a pass-through rule for unknown types.
        """
        rule = self._rules.get(entity_type)
        if rule is None:
            return EntityMappingRule(entity_type=entity_type)
        return rule

    def dependency_order(self) -> list[str]:
        """
        Entity types ordered so referenced types precede referencing ones.

        Ties are broken by declaration order. Self-references do not
        affect the order.
        """
        return list(self._order)

    def migration_order(self, present: Iterable[str]) -> list[str]:
        """
        Order for migrating the given entity types.

        Known types follow ``dependency_order``; unknown types come after
        them, sorted by name.

        Args:
            present: Entity types found in the legacy store.

        Returns:
            Ordered list covering every entity type in ``present``.
        """
        present_set = set(present)
        known = [t for t in self._order if t in present_set]
        unknown = sorted(present_set - self._rules.keys())
        return known + unknown

    def transform(
        self,
        entity_type: str,
        legacy_record: EntityRecord,
        occurrence: int = 0,
    ) -> EntityRecord:
        """
        Transform a legacy record into the target shape.

        Steps: apply renames, fill defaults, generate a content-derived id
        when absent, then validate against the typed shape (which
        canonicalises timestamps and coerces numbers to strings).

        Args:
            entity_type: Collection the record belongs to.
            legacy_record: Record as stored in the legacy store (not mutated).
            occurrence: Number of identical records before this one in the
                same legacy collection (see ``occurrences``).

        Returns:
            A new record in target shape.

        Raises:
            TransformError: If the record is not an object or fails validation.
        """
        if not isinstance(legacy_record, dict):
            raise TransformError(
                entity_type, f"expected an object, got {type(legacy_record).__name__}"
            )

        rule = self.rule_for(entity_type)
        record = copy.deepcopy(legacy_record)

        for legacy_name, target_name in rule.all_renames.items():
            if legacy_name not in record or legacy_name == target_name:
                continue
            value = record.pop(legacy_name)
            if _is_empty(record.get(target_name)):
                record[target_name] = value

        for name, default in rule.defaults.items():
            if _is_empty(record.get(name)):
                record[name] = copy.deepcopy(default)

        if _is_empty(record.get("id")):
            record["id"] = self.generate_id(entity_type, legacy_record, occurrence)

        try:
            validated = rule.model.model_validate(record)
        except ValidationError as e:
            raise TransformError(
                entity_type,
                _summarise_validation_error(e),
                record_id=str(record["id"]),
            ) from e

        dumped = validated.model_dump(mode="json")
        return {name: dumped[name] for name in record}

    @staticmethod
    def generate_id(entity_type: str, legacy_record: EntityRecord, occurrence: int = 0) -> str:
        """
        Derive a stable id from a legacy record's content.

        Args:
            entity_type: Collection the record belongs to.
            legacy_record: The record as found in the legacy store.
            occurrence: Index among identical id-less records of the same
                collection. The first copy (0) keeps the plain content id.

        Returns:
            UUID string; identical inputs always give the same id.
        """
        name = f"{entity_type}:{_canonical_json(entity_type, legacy_record)}"
        if occurrence:
            name = f"{name}#{occurrence}"
        return str(uuid5(GENERATED_ID_NAMESPACE, name))

    @staticmethod
    def occurrences(entity_type: str, legacy_records: Iterable[EntityRecord]) -> list[int]:
        """
        Number the id-less records that share identical content.

        Each entry is the count of identical id-less records earlier in
        ``legacy_records``; records with an id, or that cannot be
        serialised, get 0. Passing the result to ``transform`` gives
        identical rows distinct ids that stay the same on every run.

        Example:
            >>> EntityMappingTable.occurrences("tasks", [{"t": 1}, {"t": 1}, {"id": "x"}])
            [0, 1, 0]
        """
        seen: Counter[str] = Counter()
        result = []
        for record in legacy_records:
            if not isinstance(record, dict) or not _is_empty(record.get("id")):
                result.append(0)
                continue
            try:
                key = _canonical_json(entity_type, record)
            except TransformError:
                result.append(0)
                continue
            result.append(seen[key])
            seen[key] += 1
        return result

    def _topological_order(self) -> list[str]:
        declared = list(self._rules)
        remaining = {t: set(self._rules[t].depends_on) for t in declared}
        order: list[str] = []
        while remaining:
            ready = next((t for t in declared if t in remaining and not remaining[t]), None)
            if ready is None:
                raise ValueError(
                    f"Cyclic dependencies between entity types: {sorted(remaining)}"
                )
            order.append(ready)
            del remaining[ready]
            for deps in remaining.values():
                deps.discard(ready)
        return order

    def __repr__(self) -> str:
        return f"EntityMappingTable(entity_types={self.entity_types!r})"


def _summarise_validation_error(error: ValidationError) -> str:
    parts = []
    for detail in error.errors():
        location = ".".join(str(p) for p in detail["loc"]) or "<record>"
        parts.append(f"{location}: {detail['msg']}")
    return "; ".join(parts)


__all__ = [
    "GENERATED_ID_NAMESPACE",
    "COMMON_RENAMES",
    "EntityMappingRule",
    "DEFAULT_MAPPING_RULES",
    "EntityMappingTable",
]
