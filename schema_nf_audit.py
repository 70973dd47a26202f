"""
Relational schema normalization & referential-integrity audit tool.

The audit reads a declarative schema description (a parsed model list exported
as JSON, or a SQLAlchemy ``MetaData``), reduces it to a deterministic constraint
contract and reports findings against 1NF-BCNF plus a few foreign-key and
soft-delete heuristics. Optional user-declared functional dependencies
("invariants") let the 3NF/BCNF checks reason about business rules the schema
itself cannot express.

Everything between contract extraction and suppression is a pure function of
its inputs: files are only read and written by the Runner at the edge. No
database is contacted and no DDL is produced.
"""
from __future__ import annotations

import argparse
import importlib
import json
import re
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Callable, Dict, Iterable, List, Literal, Optional, Sequence, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel
from sqlalchemy import (
    ARRAY,
    JSON,
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    LargeBinary,
    MetaData,
    Numeric,
    String,
    Table,
    Time,
    UniqueConstraint as SqlUniqueConstraint,
)
from sqlalchemy import Enum as SqlEnum
from sqlalchemy.exc import SQLAlchemyError


# --------------------------------------------------------------------------------------
# Configuration
# --------------------------------------------------------------------------------------
CONFIG: Dict[str, Any] = {
    "INPUT": {
        # Parsed-model JSON document used when neither --schema nor --metadata is given.
        "DEFAULT_SCHEMA_PATH": "schema.json",
        "METADATA": None,  # module:attribute of a SQLAlchemy MetaData / declarative base
        "INVARIANTS": None,
        # Used by the `demo` mode.
        "DEMO_METADATA": "demo_schema:metadata",
        "DEMO_INVARIANTS": "demo_schema:DEMO_INVARIANTS",
    },
    "HEURISTICS": {
        # 1NF: String columns whose name hints at a delimited list of values.
        "LIST_IN_STRING_REGEX": r"(?i)(?:ids|list|csv|array|tags|items|values)$",
        "LIST_IN_STRING_TYPES": {"String"},
        # 1NF: phone1, phone2, ... grouped by the non-numeric base.
        "REPEATING_GROUP_REGEX": r"^(.+?)(\d+)$",
        "REPEATING_GROUP_MIN_SIZE": 2,
        "JSON_TYPES": {"Json"},
        # Soft delete
        "SOFT_DELETE_AT_FIELDS": ("deleted_at", "deletedAt"),
        "SOFT_DELETE_AT_TYPE": "DateTime",
        "SOFT_DELETE_BY_FIELDS": ("deleted_by", "deletedBy"),
    },
    "DEFAULTS": {
        "ON_DELETE": "Cascade",
        "ON_UPDATE": "Cascade",
    },
    "SUPPRESS_PATTERN": r"^[A-Z][A-Z0-9_]*:[A-Za-z][A-Za-z0-9_]*(\.[A-Za-z][A-Za-z0-9_]*)?$",
    "OUTPUT": {
        "FORMAT": "json",
        "PRETTY": False,
    },
}

EXIT_OK = 0
EXIT_ISSUES = 1
EXIT_CLI_ERROR = 2
EXIT_PARSE_ERROR = 3

RELATION_KIND = "object"


class InvariantsError(ValueError):
    """Raised when an invariants document is not structurally valid."""


class SchemaLoadError(ValueError):
    """Raised when a schema document or MetaData reference cannot be loaded."""


# --------------------------------------------------------------------------------------
# Utility helpers
# --------------------------------------------------------------------------------------
def joined(fields: Sequence[str], sep: str = ",") -> str:
    return sep.join(fields)


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def unique_in_order(values: Iterable[str]) -> List[str]:
    """De-duplicate while keeping first-seen order."""
    return list(dict.fromkeys(values))


# --------------------------------------------------------------------------------------
# Data containers
# --------------------------------------------------------------------------------------
class ReferentialAction(str, Enum):
    CASCADE = "Cascade"
    RESTRICT = "Restrict"
    NO_ACTION = "NoAction"
    SET_NULL = "SetNull"
    SET_DEFAULT = "SetDefault"

    @classmethod
    def coerce(cls, value: Optional[str], fallback: "ReferentialAction") -> "ReferentialAction":
        """Map a raw action name onto the enum, falling back when absent or unknown."""
        try:
            return cls(value)
        except ValueError:
            return fallback


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


SEVERITY_ORDER: Dict[str, int] = {"info": 0, "warning": 1, "error": 2}


class NormalForm(str, Enum):
    NF1 = "1NF"
    NF2 = "2NF"
    NF3 = "3NF"
    BCNF = "BCNF"
    SCHEMA = "SCHEMA"


class RuleCode(str, Enum):
    NF1_LIST_IN_STRING_SUSPECTED = "NF1_LIST_IN_STRING_SUSPECTED"
    NF1_REPEATING_GROUP_SUSPECTED = "NF1_REPEATING_GROUP_SUSPECTED"
    NF1_JSON_RELATION_SUSPECTED = "NF1_JSON_RELATION_SUSPECTED"
    NF2_PARTIAL_DEPENDENCY_SUSPECTED = "NF2_PARTIAL_DEPENDENCY_SUSPECTED"
    NF2_JOIN_TABLE_DUPLICATED_ATTR_SUSPECTED = "NF2_JOIN_TABLE_DUPLICATED_ATTR_SUSPECTED"
    NF3_VIOLATION = "NF3_VIOLATION"
    BCNF_VIOLATION = "BCNF_VIOLATION"
    INVARIANT_UNKNOWN_MODEL = "INVARIANT_UNKNOWN_MODEL"
    INVARIANT_UNKNOWN_FIELD = "INVARIANT_UNKNOWN_FIELD"
    INVARIANT_DETERMINANT_NOT_ENFORCED = "INVARIANT_DETERMINANT_NOT_ENFORCED"
    SOFTDELETE_MISSING_IN_UNIQUE = "SOFTDELETE_MISSING_IN_UNIQUE"
    SOFTDELETE_AT_WITHOUT_BY = "SOFTDELETE_AT_WITHOUT_BY"
    SOFTDELETE_BY_WITHOUT_AT = "SOFTDELETE_BY_WITHOUT_AT"
    FK_MISSING_INDEX = "FK_MISSING_INDEX"


RULE_PROFILE: Dict[RuleCode, Tuple[Severity, NormalForm]] = {
    RuleCode.NF1_LIST_IN_STRING_SUSPECTED: (Severity.WARNING, NormalForm.NF1),
    RuleCode.NF1_REPEATING_GROUP_SUSPECTED: (Severity.WARNING, NormalForm.NF1),
    RuleCode.NF1_JSON_RELATION_SUSPECTED: (Severity.INFO, NormalForm.NF1),
    RuleCode.NF2_PARTIAL_DEPENDENCY_SUSPECTED: (Severity.WARNING, NormalForm.NF2),
    RuleCode.NF2_JOIN_TABLE_DUPLICATED_ATTR_SUSPECTED: (Severity.WARNING, NormalForm.NF2),
    RuleCode.NF3_VIOLATION: (Severity.ERROR, NormalForm.NF3),
    RuleCode.BCNF_VIOLATION: (Severity.INFO, NormalForm.BCNF),
    RuleCode.INVARIANT_UNKNOWN_MODEL: (Severity.WARNING, NormalForm.NF3),
    RuleCode.INVARIANT_UNKNOWN_FIELD: (Severity.WARNING, NormalForm.NF3),
    RuleCode.INVARIANT_DETERMINANT_NOT_ENFORCED: (Severity.WARNING, NormalForm.SCHEMA),
    RuleCode.SOFTDELETE_MISSING_IN_UNIQUE: (Severity.WARNING, NormalForm.SCHEMA),
    RuleCode.SOFTDELETE_AT_WITHOUT_BY: (Severity.INFO, NormalForm.SCHEMA),
    RuleCode.SOFTDELETE_BY_WITHOUT_AT: (Severity.INFO, NormalForm.SCHEMA),
    RuleCode.FK_MISSING_INDEX: (Severity.INFO, NormalForm.SCHEMA),
}


class FdSource(str, Enum):
    PK = "pk"
    UNIQUE = "unique"
    FK = "fk"
    INVARIANT = "invariant"


class KeySource(str, Enum):
    PK = "pk"
    UNIQUE = "unique"


# Upstream parsed-model records. These mirror what a schema parser hands over and
# are consumed as-is; malformed input is expected to be rejected before this point.
@dataclass(frozen=True)
class AuditField:
    name: str
    type: str
    kind: str = "scalar"  # scalar | object | enum | unsupported
    is_list: bool = False
    is_required: bool = True
    is_id: bool = False
    is_unique: bool = False
    has_default_value: bool = False
    relation_name: Optional[str] = None
    relation_from_fields: Optional[Tuple[str, ...]] = None
    relation_to_fields: Optional[Tuple[str, ...]] = None
    relation_on_delete: Optional[str] = None
    relation_on_update: Optional[str] = None
    documentation: Optional[str] = None


@dataclass(frozen=True)
class AuditPrimaryKey:
    fields: Tuple[str, ...]


@dataclass(frozen=True)
class AuditUniqueIndex:
    fields: Tuple[str, ...]
    name: Optional[str] = None


@dataclass(frozen=True)
class AuditModel:
    name: str
    fields: Tuple[AuditField, ...]
    primary_key: Optional[AuditPrimaryKey] = None
    unique_indexes: Tuple[AuditUniqueIndex, ...] = ()
    documentation: Optional[str] = None


# Constraint contract
@dataclass(frozen=True)
class FieldContract:
    name: str
    type: str
    is_nullable: bool
    has_default: bool
    is_list: bool


@dataclass(frozen=True)
class PrimaryKeyConstraint:
    fields: Tuple[str, ...]

    @property
    def is_composite(self) -> bool:
        return len(self.fields) > 1


@dataclass(frozen=True)
class UniqueConstraint:
    fields: Tuple[str, ...]
    name: Optional[str] = None

    @property
    def is_composite(self) -> bool:
        return len(self.fields) > 1


@dataclass(frozen=True)
class ForeignKeyConstraint:
    fields: Tuple[str, ...]
    referenced_model: str
    referenced_fields: Tuple[str, ...]
    on_delete: ReferentialAction = ReferentialAction.CASCADE
    on_update: ReferentialAction = ReferentialAction.CASCADE


@dataclass(frozen=True)
class ModelContract:
    name: str
    fields: Tuple[FieldContract, ...]
    primary_key: Optional[PrimaryKeyConstraint] = None
    unique_constraints: Tuple[UniqueConstraint, ...] = ()
    foreign_keys: Tuple[ForeignKeyConstraint, ...] = ()

    @property
    def field_names(self) -> List[str]:
        return [f.name for f in self.fields]

    def key_field_sets(self) -> List[Tuple[str, ...]]:
        """Field lists of the PK (first) and every unique constraint."""
        sets = [self.primary_key.fields] if self.primary_key is not None else []
        sets.extend(uq.fields for uq in self.unique_constraints)
        return sets


@dataclass(frozen=True)
class ConstraintContract:
    models: Tuple[ModelContract, ...]

    def get_model(self, name: str) -> Optional[ModelContract]:
        for model in self.models:
            if model.name == name:
                return model
        return None


@dataclass(frozen=True)
class FunctionalDependency:
    determinant: Tuple[str, ...]
    dependent: Tuple[str, ...]
    model: str
    source: FdSource


@dataclass(frozen=True)
class CandidateKey:
    fields: Tuple[str, ...]
    model: str
    source: KeySource


@dataclass(frozen=True)
class Finding:
    rule: RuleCode
    severity: Severity
    normal_form: NormalForm
    model: str
    message: str
    field: Optional[str] = None
    fix: Optional[str] = None


def make_finding(
    rule: RuleCode, model: str, message: str, field: Optional[str] = None, fix: Optional[str] = None
) -> Finding:
    severity, normal_form = RULE_PROFILE[rule]
    return Finding(
        rule=rule, severity=severity, normal_form=normal_form, model=model, message=message, field=field, fix=fix
    )


@dataclass(frozen=True)
class AuditMetadata:
    schema_path: str
    timestamp: Optional[str]
    model_count: int
    finding_count: int


@dataclass(frozen=True)
class AuditResult:
    contract: ConstraintContract
    findings: Tuple[Finding, ...]
    metadata: AuditMetadata


# --------------------------------------------------------------------------------------
# Contract extraction
# --------------------------------------------------------------------------------------
def extract_contract(models: Iterable[AuditModel]) -> ConstraintContract:
    """Normalize parsed models into a sorted, diff-stable constraint contract."""
    ordered = sorted(models, key=lambda m: m.name)
    return ConstraintContract(models=tuple(_extract_model_contract(m) for m in ordered))


def _extract_model_contract(model: AuditModel) -> ModelContract:
    scalar_fields = sorted((f for f in model.fields if f.kind != RELATION_KIND), key=lambda f: f.name)
    return ModelContract(
        name=model.name,
        fields=tuple(
            FieldContract(
                name=f.name,
                type=f.type,
                is_nullable=not f.is_required,
                has_default=f.has_default_value,
                is_list=f.is_list,
            )
            for f in scalar_fields
        ),
        primary_key=_extract_primary_key(model),
        unique_constraints=_extract_unique_constraints(model),
        foreign_keys=_extract_foreign_keys(model),
    )


def _extract_primary_key(model: AuditModel) -> Optional[PrimaryKeyConstraint]:
    # A composite declaration outranks any single-field identity marker.
    if model.primary_key is not None:
        return PrimaryKeyConstraint(fields=tuple(model.primary_key.fields))
    for f in model.fields:
        if f.is_id:
            return PrimaryKeyConstraint(fields=(f.name,))
    return None


def _extract_unique_constraints(model: AuditModel) -> Tuple[UniqueConstraint, ...]:
    constraints = [
        UniqueConstraint(fields=(f.name,)) for f in model.fields if f.is_unique and f.kind != RELATION_KIND
    ]
    constraints.extend(UniqueConstraint(fields=tuple(idx.fields), name=idx.name) for idx in model.unique_indexes)
    return tuple(sorted(constraints, key=lambda c: joined(c.fields)))


def _extract_foreign_keys(model: AuditModel) -> Tuple[ForeignKeyConstraint, ...]:
    on_delete_default = ReferentialAction(CONFIG["DEFAULTS"]["ON_DELETE"])
    on_update_default = ReferentialAction(CONFIG["DEFAULTS"]["ON_UPDATE"])
    fks = []
    for f in model.fields:
        if f.kind != RELATION_KIND or not f.relation_from_fields or not f.relation_to_fields:
            continue
        fks.append(
            ForeignKeyConstraint(
                fields=tuple(f.relation_from_fields),
                referenced_model=f.type,
                referenced_fields=tuple(f.relation_to_fields),
                on_delete=ReferentialAction.coerce(f.relation_on_delete, on_delete_default),
                on_update=ReferentialAction.coerce(f.relation_on_update, on_update_default),
            )
        )
    return tuple(sorted(fks, key=lambda fk: joined(fk.fields)))


# --------------------------------------------------------------------------------------
# Functional dependency inference
# --------------------------------------------------------------------------------------
def infer_functional_dependencies(contract: ConstraintContract) -> List[FunctionalDependency]:
    """Derive FDs implied by the schema.

    - PK -> every non-PK field
    - each unique constraint -> every field outside it
    - FK local fields -> referenced fields (cross-model, tagged ``fk``)

    Key-to-rest FDs with nothing on the right (all-key join tables) are skipped.
    """
    fds: List[FunctionalDependency] = []
    for model in contract.models:
        all_fields = model.field_names

        if model.primary_key is not None:
            pk_fields = model.primary_key.fields
            dependent = tuple(f for f in all_fields if f not in pk_fields)
            if dependent:
                fds.append(FunctionalDependency(pk_fields, dependent, model.name, FdSource.PK))

        for uq in model.unique_constraints:
            dependent = tuple(f for f in all_fields if f not in uq.fields)
            if dependent:
                fds.append(FunctionalDependency(uq.fields, dependent, model.name, FdSource.UNIQUE))

        for fk in model.foreign_keys:
            fds.append(FunctionalDependency(fk.fields, fk.referenced_fields, model.name, FdSource.FK))
    return fds


def attribute_closure(attributes: Iterable[str], fds: Sequence[FunctionalDependency], model: str) -> Set[str]:
    """Compute X+ for ``attributes`` within ``model`` by saturating until stable.

    FK-sourced FDs are ignored: their dependents live on the referenced model.
    The loop ends because the closure only grows and the field universe is finite.
    """
    closure = set(attributes)
    model_fds = [fd for fd in fds if fd.model == model and fd.source != FdSource.FK]

    changed = True
    while changed:
        changed = False
        for fd in model_fds:
            if closure.issuperset(fd.determinant) and not closure.issuperset(fd.dependent):
                closure.update(fd.dependent)
                changed = True
    return closure


def is_superkey(
    attributes: Iterable[str], all_fields: Iterable[str], fds: Sequence[FunctionalDependency], model: str
) -> bool:
    return attribute_closure(attributes, fds, model).issuperset(all_fields)


# --------------------------------------------------------------------------------------
# Candidate keys
# --------------------------------------------------------------------------------------
def extract_candidate_keys(contract: ConstraintContract, model_name: str) -> List[CandidateKey]:
    """PK (if any) followed by each unique constraint; empty for unknown models."""
    model = contract.get_model(model_name)
    if model is None:
        return []
    keys: List[CandidateKey] = []
    if model.primary_key is not None:
        keys.append(CandidateKey(model.primary_key.fields, model_name, KeySource.PK))
    for uq in model.unique_constraints:
        keys.append(CandidateKey(uq.fields, model_name, KeySource.UNIQUE))
    return keys


# --------------------------------------------------------------------------------------
# Invariants (user-declared functional dependencies)
# --------------------------------------------------------------------------------------
class InvariantFd(BaseModel):
    determinant: List[str] = Field(min_length=1)
    dependent: List[str] = Field(min_length=1)
    note: Optional[str] = None
    rule: Optional[str] = None


class ModelInvariants(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    functional_dependencies: Optional[List[InvariantFd]] = None


InvariantsFile = Dict[str, ModelInvariants]
SuppressEntry = Annotated[str, StringConstraints(pattern=CONFIG["SUPPRESS_PATTERN"])]

INVARIANTS_ADAPTER = TypeAdapter(InvariantsFile)
SUPPRESS_ADAPTER = TypeAdapter(List[SuppressEntry])


@dataclass
class ParsedInvariants:
    invariants: InvariantsFile
    suppress: Tuple[str, ...] = ()


def parse_invariants_document(raw: Any) -> ParsedInvariants:
    """Validate an already-decoded invariants document.

    The top-level ``suppress`` list is pulled out first so the remaining keys can
    be validated as a plain model-name mapping.
    """
    suppress: List[str] = []
    model_data = raw
    if isinstance(raw, dict) and "suppress" in raw:
        try:
            suppress = SUPPRESS_ADAPTER.validate_python(raw["suppress"])
        except ValidationError as exc:
            raise InvariantsError(f"Invalid suppress list: {exc}") from exc
        model_data = {k: v for k, v in raw.items() if k != "suppress"}

    try:
        invariants = INVARIANTS_ADAPTER.validate_python(model_data)
    except ValidationError as exc:
        raise InvariantsError(f"Invalid invariants document: {exc}") from exc
    return ParsedInvariants(invariants=invariants, suppress=tuple(suppress))


def parse_invariants_text(text: str) -> ParsedInvariants:
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        raise InvariantsError(f"Invariants document is not valid JSON: {exc}") from exc
    return parse_invariants_document(raw)


def load_invariants_file(path: Path) -> ParsedInvariants:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise InvariantsError(f"Invariants document {path} is not valid UTF-8: {exc}") from exc
    return parse_invariants_text(text)


def invariants_to_fds(invariants: InvariantsFile) -> List[FunctionalDependency]:
    fds: List[FunctionalDependency] = []
    for model_name, model_invariants in invariants.items():
        for fd in model_invariants.functional_dependencies or []:
            fds.append(
                FunctionalDependency(tuple(fd.determinant), tuple(fd.dependent), model_name, FdSource.INVARIANT)
            )
    return fds


def validate_invariants_against_contract(invariants: InvariantsFile, contract: ConstraintContract) -> List[Finding]:
    """Cross-check declared FDs against the schema.

    Unknown models and fields are reported once each. A determinant that is fully
    known but does not contain any PK/unique field set is reported as unenforced,
    since nothing in the schema guarantees it is unique.
    """
    findings: List[Finding] = []
    for model_name, model_invariants in invariants.items():
        model = contract.get_model(model_name)
        if model is None:
            findings.append(
                make_finding(
                    RuleCode.INVARIANT_UNKNOWN_MODEL,
                    model_name,
                    f'Invariants reference model "{model_name}" which does not exist in the schema.',
                    fix=f"Remove or rename model '{model_name}' in the invariants file.",
                )
            )
            continue

        field_names = set(model.field_names)
        key_sets = model.key_field_sets()

        for fd in model_invariants.functional_dependencies or []:
            unknown_in_determinant = False
            for name in unique_in_order(fd.determinant + fd.dependent):
                if name in field_names:
                    continue
                if name in fd.determinant:
                    unknown_in_determinant = True
                findings.append(
                    make_finding(
                        RuleCode.INVARIANT_UNKNOWN_FIELD,
                        model_name,
                        f'Invariants reference field "{name}" which does not exist in model "{model_name}".',
                        field=name,
                        fix=f"Remove or rename field '{name}' of model '{model_name}' in the invariants file.",
                    )
                )

            if unknown_in_determinant:
                continue
            determinant = set(fd.determinant)
            if not any(determinant.issuperset(key) for key in key_sets):
                det = joined(fd.determinant, ", ")
                findings.append(
                    make_finding(
                        RuleCode.INVARIANT_DETERMINANT_NOT_ENFORCED,
                        model_name,
                        f'Invariant FD {{{det}}} → {{{joined(fd.dependent, ", ")}}} on "{model_name}": '
                        "determinant is not enforced by any PK or unique constraint.",
                        fix=f"Add a unique constraint on ({det}) to enforce this functional dependency.",
                    )
                )
    return findings


def is_suppressed(finding: Finding, suppress: Sequence[str]) -> bool:
    """Match ``RULE:Model`` (whole model) or ``RULE:Model.field`` (one field)."""
    for entry in suppress:
        rule, _, target = entry.partition(":")
        if rule != finding.rule.value:
            continue
        model, dot, field_name = target.partition(".")
        if not dot:
            if model == finding.model:
                return True
        elif model == finding.model and field_name == finding.field:
            return True
    return False


def apply_suppression(findings: Sequence[Finding], suppress: Sequence[str]) -> List[Finding]:
    if not suppress:
        return list(findings)
    return [f for f in findings if not is_suppressed(f, suppress)]


def generate_invariants_file(contract: ConstraintContract, fds: Sequence[FunctionalDependency]) -> Dict[str, Any]:
    """Write the schema's own PK/unique FDs out as an invariants document.

    FK and invariant FDs are left out. Models without an eligible FD (e.g. all-key
    join tables) do not appear at all.
    """
    by_model: Dict[str, List[FunctionalDependency]] = {}
    for fd in fds:
        if fd.source in (FdSource.PK, FdSource.UNIQUE):
            by_model.setdefault(fd.model, []).append(fd)

    document: Dict[str, Any] = {}
    for model_name in sorted(by_model):
        entries = [
            {
                "determinant": sorted(fd.determinant),
                "dependent": sorted(fd.dependent),
                "note": _generated_note(fd),
                "rule": _generated_rule(fd, model_name),
            }
            for fd in by_model[model_name]
        ]
        if entries:
            document[model_name] = {"functionalDependencies": entries}

    INVARIANTS_ADAPTER.validate_python(document)
    return document


def _generated_rule(fd: FunctionalDependency, model_name: str) -> str:
    return f"Each {model_name} is uniquely identified by {joined(fd.determinant, ' + ')}"


def _generated_note(fd: FunctionalDependency) -> str:
    composite = len(fd.determinant) > 1
    if fd.source == FdSource.PK:
        return f"Composite primary key ({joined(fd.determinant, ', ')})" if composite else "Primary key determines all fields"
    if composite:
        return f"Composite unique constraint on ({joined(fd.determinant, ', ')})"
    return f"Unique constraint on ({joined(fd.determinant, ', ')})"


# --------------------------------------------------------------------------------------
# Normal-form & heuristic checkers
# --------------------------------------------------------------------------------------
def check_1nf(contract: ConstraintContract) -> List[Finding]:
    """Name/type heuristics for non-atomic values. False positives are expected."""
    findings: List[Finding] = []
    for model in contract.models:
        findings.extend(_list_in_string(model))
        findings.extend(_repeating_groups(model))
        findings.extend(_json_columns(model))
    return findings


def _list_in_string(model: ModelContract) -> List[Finding]:
    heur = CONFIG["HEURISTICS"]
    findings = []
    for f in model.fields:
        if f.type in heur["LIST_IN_STRING_TYPES"] and re.search(heur["LIST_IN_STRING_REGEX"], f.name):
            findings.append(
                make_finding(
                    RuleCode.NF1_LIST_IN_STRING_SUSPECTED,
                    model.name,
                    f'String field "{f.name}" may hold a delimited list of values. '
                    "Consider moving the values into a separate table.",
                    field=f.name,
                )
            )
    return findings


def _repeating_groups(model: ModelContract) -> List[Finding]:
    heur = CONFIG["HEURISTICS"]
    groups: Dict[str, List[FieldContract]] = {}
    for f in model.fields:
        match = re.match(heur["REPEATING_GROUP_REGEX"], f.name)
        if match:
            groups.setdefault(match.group(1), []).append(f)

    findings = []
    for base, members in groups.items():
        if len(members) < heur["REPEATING_GROUP_MIN_SIZE"]:
            continue
        if len({m.type for m in members}) != 1:
            continue
        names = joined([m.name for m in members], ", ")
        findings.append(
            make_finding(
                RuleCode.NF1_REPEATING_GROUP_SUSPECTED,
                model.name,
                f'Fields [{names}] look like a repeating group for "{base}". '
                "Consider moving them into a child table.",
            )
        )
    return findings


def _json_columns(model: ModelContract) -> List[Finding]:
    return [
        make_finding(
            RuleCode.NF1_JSON_RELATION_SUSPECTED,
            model.name,
            f'Json field "{f.name}" may embed structured data that belongs in related tables.',
            field=f.name,
        )
        for f in model.fields
        if f.type in CONFIG["HEURISTICS"]["JSON_TYPES"]
    ]


def check_2nf(contract: ConstraintContract, fds: Sequence[FunctionalDependency]) -> List[Finding]:
    """Partial-dependency and join-table heuristics for composite-PK models."""
    findings: List[Finding] = []
    for model in contract.models:
        composite_pk = next(
            (k for k in extract_candidate_keys(contract, model.name) if k.source == KeySource.PK and len(k.fields) > 1),
            None,
        )
        if composite_pk is None:
            continue
        findings.extend(_partial_dependencies(model, composite_pk.fields, fds))
        findings.extend(_join_table_extra_attributes(model, composite_pk.fields))
    return findings


def _partial_dependencies(
    model: ModelContract, pk_fields: Tuple[str, ...], fds: Sequence[FunctionalDependency]
) -> List[Finding]:
    non_key = [name for name in model.field_names if name not in pk_fields]
    findings = []
    for fd in fds:
        if fd.model != model.name or fd.source != FdSource.FK:
            continue
        # An FK over part of the key hints that other columns hang off that part only.
        if len(fd.determinant) >= len(pk_fields) or not set(fd.determinant).issubset(pk_fields):
            continue
        det = joined(fd.determinant, ", ")
        for name in non_key:
            if name in fd.determinant:
                continue
            findings.append(
                make_finding(
                    RuleCode.NF2_PARTIAL_DEPENDENCY_SUSPECTED,
                    model.name,
                    f'Field "{name}" in composite-key model "{model.name}" may depend on only part of '
                    f"the primary key ({det}). Consider extracting it to a separate table.",
                    field=name,
                )
            )
    return findings


def _join_table_extra_attributes(model: ModelContract, pk_fields: Tuple[str, ...]) -> List[Finding]:
    fk_fields = {name for fk in model.foreign_keys for name in fk.fields}
    if not all(name in fk_fields for name in pk_fields):
        return []
    extra = [name for name in model.field_names if name not in pk_fields and name not in fk_fields]
    if not extra:
        return []
    return [
        make_finding(
            RuleCode.NF2_JOIN_TABLE_DUPLICATED_ATTR_SUSPECTED,
            model.name,
            f'Join table "{model.name}" carries extra attributes [{joined(extra, ", ")}] beyond its '
            "composite key. Consider whether it should be a first-class entity.",
        )
    ]


def check_3nf(contract: ConstraintContract, fds: Sequence[FunctionalDependency]) -> List[Finding]:
    """Classify declared (invariant) FDs whose determinant is not a superkey.

    A dependent that is part of some candidate key only breaks BCNF; any other
    dependent is a transitive dependency and breaks 3NF.
    """
    findings: List[Finding] = []
    intra_model = [fd for fd in fds if fd.source != FdSource.FK]

    for fd in fds:
        if fd.source != FdSource.INVARIANT:
            continue
        model = contract.get_model(fd.model)
        if model is None:
            continue
        all_fields = model.field_names
        if is_superkey(fd.determinant, all_fields, intra_model, fd.model):
            continue

        key_material = {name for key in extract_candidate_keys(contract, fd.model) for name in key.fields}
        det = joined(fd.determinant, ", ")
        for dep in fd.dependent:
            if dep in fd.determinant or dep not in all_fields:
                continue
            if dep in key_material:
                findings.append(
                    make_finding(
                        RuleCode.BCNF_VIOLATION,
                        fd.model,
                        f"FD {{{det}}} → {{{dep}}}: determinant is not a superkey. 3NF holds because "
                        f'"{dep}" is part of a candidate key, but BCNF does not.',
                        field=dep,
                    )
                )
            else:
                findings.append(
                    make_finding(
                        RuleCode.NF3_VIOLATION,
                        fd.model,
                        f'FD {{{det}}} → {{{dep}}}: transitive dependency. "{dep}" depends on the '
                        f"non-key attributes {{{det}}} rather than on a candidate key.",
                        field=dep,
                        fix=f"Move {dep} into a table keyed by ({det}).",
                    )
                )
    return findings


def check_soft_delete(contract: ConstraintContract) -> List[Finding]:
    heur = CONFIG["HEURISTICS"]
    findings: List[Finding] = []
    for model in contract.models:
        deleted_at = next(
            (
                f
                for f in model.fields
                if f.name in heur["SOFT_DELETE_AT_FIELDS"] and f.type == heur["SOFT_DELETE_AT_TYPE"]
            ),
            None,
        )
        deleted_by = next((f for f in model.fields if f.name in heur["SOFT_DELETE_BY_FIELDS"]), None)

        if deleted_at is not None:
            for uq in model.unique_constraints:
                if deleted_at.name in uq.fields:
                    continue
                cols = joined(uq.fields, ", ")
                findings.append(
                    make_finding(
                        RuleCode.SOFTDELETE_MISSING_IN_UNIQUE,
                        model.name,
                        f'Unique constraint ({cols}) on "{model.name}" does not include soft-delete field '
                        f'"{deleted_at.name}". Deleted rows can collide with live ones.',
                        field=deleted_at.name,
                        fix=f"Add '{deleted_at.name}' to the unique constraint: ({cols}, {deleted_at.name})",
                    )
                )

        if deleted_at is not None and deleted_by is None:
            findings.append(
                make_finding(
                    RuleCode.SOFTDELETE_AT_WITHOUT_BY,
                    model.name,
                    f'Model "{model.name}" has "{deleted_at.name}" but no deleted_by/deletedBy field '
                    "recording who soft-deleted the row.",
                    field=deleted_at.name,
                    fix=f"Add a 'deleted_by' field to \"{model.name}\".",
                )
            )
        elif deleted_by is not None and deleted_at is None:
            findings.append(
                make_finding(
                    RuleCode.SOFTDELETE_BY_WITHOUT_AT,
                    model.name,
                    f'Model "{model.name}" has "{deleted_by.name}" but no deleted_at/deletedAt DateTime '
                    "field. The soft-delete pattern is incomplete.",
                    field=deleted_by.name,
                    fix=f"Add a nullable 'deleted_at' DateTime field to \"{model.name}\".",
                )
            )
    return findings


def check_fk_indexes(contract: ConstraintContract) -> List[Finding]:
    """Flag FKs that are not a leftmost prefix of the PK or a unique constraint.

    Plain (non-unique) indexes are not part of the contract, so an FK covered only
    by one is still reported.
    """
    findings: List[Finding] = []
    for model in contract.models:
        key_sets = model.key_field_sets()
        for fk in model.foreign_keys:
            if any(is_leftmost_prefix(fk.fields, key) for key in key_sets):
                continue
            cols = joined(fk.fields, ", ")
            findings.append(
                make_finding(
                    RuleCode.FK_MISSING_INDEX,
                    model.name,
                    f'Foreign key ({cols}) on "{model.name}" referencing "{fk.referenced_model}" is not '
                    "covered by any PK or unique constraint prefix. Joins on it may be slow.",
                    field=fk.fields[0] if len(fk.fields) == 1 else None,
                    fix=f"Add an index on ({cols}) to '{model.name}'.",
                )
            )
    return findings


def is_leftmost_prefix(prefix: Sequence[str], fields: Sequence[str]) -> bool:
    if len(prefix) > len(fields):
        return False
    return all(a == b for a, b in zip(prefix, fields))


# --------------------------------------------------------------------------------------
# Audit orchestration
# --------------------------------------------------------------------------------------
Checker = Callable[[ConstraintContract, Sequence[FunctionalDependency]], List[Finding]]

CHECKERS: Dict[str, Checker] = {
    "1NF": lambda contract, fds: check_1nf(contract),
    "2NF": check_2nf,
    "3NF/BCNF": check_3nf,
    "SOFT_DELETE": lambda contract, fds: check_soft_delete(contract),
    "FK_INDEX": lambda contract, fds: check_fk_indexes(contract),
}


def run_audit(
    contract: ConstraintContract,
    invariants: Optional[ParsedInvariants] = None,
    schema_path: str = "",
    no_timestamp: bool = False,
) -> AuditResult:
    """Single pass: FDs -> checkers -> invariant findings -> suppression."""
    fds = infer_functional_dependencies(contract)
    invariant_findings: List[Finding] = []
    suppress: Tuple[str, ...] = ()
    if invariants is not None:
        fds = fds + invariants_to_fds(invariants.invariants)
        invariant_findings = validate_invariants_against_contract(invariants.invariants, contract)
        suppress = invariants.suppress

    findings: List[Finding] = []
    for checker in CHECKERS.values():
        findings.extend(checker(contract, fds))
    findings.extend(invariant_findings)
    findings = apply_suppression(findings, suppress)

    return AuditResult(
        contract=contract,
        findings=tuple(findings),
        metadata=AuditMetadata(
            schema_path=schema_path,
            timestamp=None if no_timestamp else utc_timestamp(),
            model_count=len(contract.models),
            finding_count=len(findings),
        ),
    )


def load_models(schema_path: Optional[str] = None, metadata_ref: Optional[str] = None) -> List[AuditModel]:
    if metadata_ref is not None:
        return MetadataReader(load_metadata_ref(metadata_ref)).list_models()
    return load_schema_file(Path(schema_path or CONFIG["INPUT"]["DEFAULT_SCHEMA_PATH"]))


def audit(
    schema_path: Optional[str] = None,
    invariants_path: Optional[str] = None,
    no_timestamp: bool = False,
    metadata_ref: Optional[str] = None,
) -> AuditResult:
    contract = extract_contract(load_models(schema_path, metadata_ref))
    invariants = load_invariants_file(Path(invariants_path)) if invariants_path is not None else None
    label = metadata_ref if metadata_ref is not None else str(schema_path or CONFIG["INPUT"]["DEFAULT_SCHEMA_PATH"])
    return run_audit(contract, invariants, schema_path=label, no_timestamp=no_timestamp)


def generate_invariants(schema_path: Optional[str] = None, metadata_ref: Optional[str] = None) -> Dict[str, Any]:
    contract = extract_contract(load_models(schema_path, metadata_ref))
    return generate_invariants_file(contract, infer_functional_dependencies(contract))


# --------------------------------------------------------------------------------------
# Report serialization
# --------------------------------------------------------------------------------------
def contract_to_dict(contract: ConstraintContract) -> Dict[str, Any]:
    return {"models": [_model_to_dict(m) for m in contract.models]}


def _model_to_dict(model: ModelContract) -> Dict[str, Any]:
    pk = model.primary_key
    return {
        "name": model.name,
        "fields": [
            {
                "name": f.name,
                "type": f.type,
                "isNullable": f.is_nullable,
                "hasDefault": f.has_default,
                "isList": f.is_list,
            }
            for f in model.fields
        ],
        "primaryKey": None if pk is None else {"fields": list(pk.fields), "isComposite": pk.is_composite},
        "uniqueConstraints": [
            {"name": uq.name, "fields": list(uq.fields), "isComposite": uq.is_composite}
            for uq in model.unique_constraints
        ],
        "foreignKeys": [
            {
                "fields": list(fk.fields),
                "referencedModel": fk.referenced_model,
                "referencedFields": list(fk.referenced_fields),
                "onDelete": fk.on_delete.value,
                "onUpdate": fk.on_update.value,
            }
            for fk in model.foreign_keys
        ],
    }


def finding_to_dict(finding: Finding) -> Dict[str, Any]:
    return {
        "rule": finding.rule.value,
        "severity": finding.severity.value,
        "normalForm": finding.normal_form.value,
        "model": finding.model,
        "field": finding.field,
        "message": finding.message,
        "fix": finding.fix,
    }


def result_to_dict(result: AuditResult, findings_only: bool = False) -> Dict[str, Any]:
    meta = result.metadata
    data: Dict[str, Any] = {
        "findings": [finding_to_dict(f) for f in result.findings],
        "metadata": {
            "schemaPath": meta.schema_path,
            "timestamp": meta.timestamp,
            "modelCount": meta.model_count,
            "findingCount": meta.finding_count,
        },
    }
    if not findings_only:
        data["contract"] = contract_to_dict(result.contract)
    return data


def to_json(result: AuditResult, pretty: bool = False, findings_only: bool = False) -> str:
    """Serialize with sorted keys so equal audits produce identical text."""
    return json.dumps(
        result_to_dict(result, findings_only), indent=2 if pretty else None, sort_keys=True, ensure_ascii=False
    )


def to_text(result: AuditResult, findings_only: bool = False) -> str:
    meta = result.metadata
    lines = ["=== Schema Normalization Audit ===", ""]
    if meta.timestamp is not None:
        lines.append(f"Timestamp: {meta.timestamp}")
    lines.extend(
        [
            f"Schema:    {meta.schema_path}",
            f"Models:    {meta.model_count}",
            f"Findings:  {meta.finding_count}",
            "",
        ]
    )

    if not findings_only:
        lines.append("--- Constraint Contract ---")
        for model in result.contract.models:
            lines.append(f"  Model: {model.name}")
            if model.primary_key is not None:
                lines.append(f"    PK: ({joined(model.primary_key.fields, ', ')})")
            for uq in model.unique_constraints:
                label = f" [{uq.name}]" if uq.name is not None else ""
                lines.append(f"    Unique{label}: ({joined(uq.fields, ', ')})")
            for fk in model.foreign_keys:
                lines.append(
                    f"    FK: ({joined(fk.fields, ', ')}) -> {fk.referenced_model}({joined(fk.referenced_fields, ', ')})"
                    f" onDelete={fk.on_delete.value} onUpdate={fk.on_update.value}"
                )
        lines.append("")

    if result.findings:
        lines.append("--- Findings ---")
        for f in result.findings:
            suffix = f".{f.field}" if f.field is not None else ""
            lines.append(f"  [{f.severity.value.upper()}] {f.rule.value} @ {f.model}{suffix}")
            lines.append(f"    {f.message}")
            if f.fix is not None:
                lines.append(f"    Fix: {f.fix}")
    else:
        lines.append("No normalization findings.")
    lines.append("")
    return "\n".join(lines)


# --------------------------------------------------------------------------------------
# Schema sources
# --------------------------------------------------------------------------------------
class _DocumentRecord(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _DocumentField(_DocumentRecord):
    name: str
    type: str
    kind: Literal["scalar", "object", "enum", "unsupported"] = "scalar"
    is_list: bool = False
    is_required: bool = True
    is_id: bool = False
    is_unique: bool = False
    has_default_value: bool = False
    relation_name: Optional[str] = None
    relation_from_fields: Optional[List[str]] = None
    relation_to_fields: Optional[List[str]] = None
    relation_on_delete: Optional[str] = None
    relation_on_update: Optional[str] = None
    documentation: Optional[str] = None


class _DocumentKey(_DocumentRecord):
    name: Optional[str] = None
    fields: List[str] = Field(min_length=1)


class _DocumentModel(_DocumentRecord):
    name: str
    fields: List[_DocumentField]
    primary_key: Optional[_DocumentKey] = None
    unique_indexes: List[_DocumentKey] = Field(default_factory=list)
    documentation: Optional[str] = None


class _SchemaDocument(BaseModel):
    models: List[_DocumentModel]


def parse_schema_document(raw: Any) -> List[AuditModel]:
    """Read a parsed-model document (``{"models": [...]}`` or a DMMF ``datamodel`` wrapper)."""
    if isinstance(raw, dict) and "datamodel" in raw:
        raw = raw["datamodel"]
    try:
        document = _SchemaDocument.model_validate(raw)
    except ValidationError as exc:
        raise SchemaLoadError(f"Invalid schema document: {exc}") from exc

    models = []
    for m in document.models:
        models.append(
            AuditModel(
                name=m.name,
                fields=tuple(
                    AuditField(
                        name=f.name,
                        type=f.type,
                        kind=f.kind,
                        is_list=f.is_list,
                        is_required=f.is_required,
                        is_id=f.is_id,
                        is_unique=f.is_unique,
                        has_default_value=f.has_default_value,
                        relation_name=f.relation_name,
                        relation_from_fields=tuple(f.relation_from_fields) if f.relation_from_fields else None,
                        relation_to_fields=tuple(f.relation_to_fields) if f.relation_to_fields else None,
                        relation_on_delete=f.relation_on_delete,
                        relation_on_update=f.relation_on_update,
                        documentation=f.documentation,
                    )
                    for f in m.fields
                ),
                primary_key=AuditPrimaryKey(tuple(m.primary_key.fields)) if m.primary_key is not None else None,
                unique_indexes=tuple(AuditUniqueIndex(tuple(idx.fields), idx.name) for idx in m.unique_indexes),
                documentation=m.documentation,
            )
        )
    return models


def load_schema_file(path: Path) -> List[AuditModel]:
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise SchemaLoadError(f"Schema document {path} is not valid JSON: {exc}") from exc
    return parse_schema_document(raw)


def load_metadata_ref(ref: str) -> MetaData:
    """Resolve ``package.module:attribute`` to a MetaData (declarative bases are unwrapped)."""
    module_name, sep, attr = ref.partition(":")
    if not sep or not module_name or not attr:
        raise SchemaLoadError(f"Metadata reference must look like module:attribute, got {ref!r}")
    try:
        module = importlib.import_module(module_name)
    except (ImportError, SyntaxError, SQLAlchemyError) as exc:
        raise SchemaLoadError(f"Cannot import {module_name}: {exc}") from exc
    obj = getattr(module, attr, None)
    if obj is not None and not isinstance(obj, MetaData):
        obj = getattr(obj, "metadata", None)
    if not isinstance(obj, MetaData):
        raise SchemaLoadError(f"{ref} is not a SQLAlchemy MetaData or declarative base")
    return obj


class MetadataReader:
    """Turns SQLAlchemy ``Table`` definitions into parsed-model records."""

    # Checked in order: subclasses (BigInteger, Float, Enum) before their bases.
    TYPE_NAMES: Sequence[Tuple[type, str]] = (
        (JSON, "Json"),
        (DateTime, "DateTime"),
        (Date, "DateTime"),
        (Time, "DateTime"),
        (Boolean, "Boolean"),
        (BigInteger, "BigInt"),
        (Integer, "Int"),
        (Float, "Float"),
        (Numeric, "Decimal"),
        (LargeBinary, "Bytes"),
        (String, "String"),
    )

    ACTIONS: Dict[str, str] = {
        "CASCADE": "Cascade",
        "RESTRICT": "Restrict",
        "NO ACTION": "NoAction",
        "SET NULL": "SetNull",
        "SET DEFAULT": "SetDefault",
    }

    def __init__(self, metadata: MetaData) -> None:
        self.metadata = metadata

    def list_tables(self) -> List[Table]:
        return sorted(self.metadata.tables.values(), key=lambda t: t.name)

    def list_models(self) -> List[AuditModel]:
        try:
            return [self.model_for_table(t) for t in self.list_tables()]
        except SQLAlchemyError as exc:
            raise SchemaLoadError(f"Cannot read SQLAlchemy metadata: {exc}") from exc

    def model_for_table(self, table: Table) -> AuditModel:
        pk_columns = list(table.primary_key.columns)
        single_pk = pk_columns[0].name if len(pk_columns) == 1 else None

        fields: List[AuditField] = []
        for column in table.columns:
            kind, type_name, is_list = self.scalar_type(column.type)
            fields.append(
                AuditField(
                    name=column.name,
                    type=type_name,
                    kind=kind,
                    is_list=is_list,
                    is_required=not column.nullable,
                    is_id=column.name == single_pk,
                    is_unique=bool(column.unique),
                    has_default_value=column.default is not None or column.server_default is not None,
                    documentation=column.comment,
                )
            )
        fields.extend(self._relation_fields(table))

        return AuditModel(
            name=table.name,
            fields=tuple(fields),
            primary_key=AuditPrimaryKey(tuple(c.name for c in pk_columns)) if len(pk_columns) > 1 else None,
            unique_indexes=tuple(self._unique_indexes(table)),
            documentation=table.comment,
        )

    def scalar_type(self, sql_type: Any) -> Tuple[str, str, bool]:
        """Return (kind, type name, is_list) for a column type."""
        if isinstance(sql_type, ARRAY):
            kind, name, _ = self.scalar_type(sql_type.item_type)
            return kind, name, True
        if isinstance(sql_type, SqlEnum):
            return "enum", sql_type.name or "Enum", False
        for sa_type, name in self.TYPE_NAMES:
            if isinstance(sql_type, sa_type):
                return "scalar", name, False
        return "unsupported", type(sql_type).__name__, False

    def _unique_indexes(self, table: Table) -> List[AuditUniqueIndex]:
        indexes = []
        for constraint in table.constraints:
            if isinstance(constraint, SqlUniqueConstraint):
                indexes.extend(self._unique_index(constraint.name, list(constraint.columns)))
        for index in table.indexes:
            if isinstance(index, Index) and index.unique:
                indexes.extend(self._unique_index(index.name, list(index.columns)))
        return indexes

    @staticmethod
    def _unique_index(name: Any, columns: List[Any]) -> List[AuditUniqueIndex]:
        # Column(unique=True) already surfaces as a single-field marker.
        if not columns or (len(columns) == 1 and columns[0].unique):
            return []
        return [AuditUniqueIndex(fields=tuple(c.name for c in columns), name=name if isinstance(name, str) else None)]

    def _relation_fields(self, table: Table) -> List[AuditField]:
        relations = []
        for fkc in sorted(table.foreign_key_constraints, key=lambda c: joined(c.column_keys)):
            referred = fkc.referred_table
            local = tuple(e.parent.name for e in fkc.elements)
            remote = tuple(e.column.name for e in fkc.elements)
            relations.append(
                AuditField(
                    name=f"{referred.name}_via_{joined(local, '_')}",
                    type=referred.name,
                    kind=RELATION_KIND,
                    is_required=all(not e.parent.nullable for e in fkc.elements),
                    relation_name=fkc.name if isinstance(fkc.name, str) else None,
                    relation_from_fields=local,
                    relation_to_fields=remote,
                    relation_on_delete=self._action(fkc.ondelete),
                    relation_on_update=self._action(fkc.onupdate),
                )
            )
        return relations

    def _action(self, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return self.ACTIONS.get(" ".join(value.upper().split()), value)


# --------------------------------------------------------------------------------------
# Runner
# --------------------------------------------------------------------------------------
def log(level: str, message: str) -> None:
    print(f"[{level}] {message}", file=sys.stderr)


@dataclass
class RunOptions:
    schema_path: Optional[str] = None
    metadata_ref: Optional[str] = None
    invariants_path: Optional[str] = None
    output_format: str = "json"
    out_path: Optional[str] = None
    fail_on: Optional[str] = None
    no_timestamp: bool = False
    pretty: bool = False
    findings_only: bool = False
    generate_invariants: bool = False
    demo: bool = False


class ReportWriter:
    """Sends rendered output to a file or stdout."""

    def __init__(self, out_path: Optional[str]) -> None:
        self.out_path = Path(out_path) if out_path is not None else None

    def write(self, output: str) -> None:
        if self.out_path is None:
            sys.stdout.write(output + "\n")
            return
        self.out_path.parent.mkdir(parents=True, exist_ok=True)
        self.out_path.write_text(output, encoding="utf-8")
        log("INFO", f"Output written to {self.out_path}")


class Runner:
    """Validates options, runs one audit (or invariants generation) and maps the exit code."""

    def __init__(self, options: RunOptions) -> None:
        self.options = options
        self.writer = ReportWriter(options.out_path)

    def run(self) -> int:
        opts = self.options
        if opts.metadata_ref is None:
            schema_path = Path(opts.schema_path or CONFIG["INPUT"]["DEFAULT_SCHEMA_PATH"])
            if not schema_path.is_file():
                log("ERROR", f"Schema file not found: {schema_path}")
                return EXIT_CLI_ERROR
        if opts.invariants_path is not None and not Path(opts.invariants_path).is_file():
            log("ERROR", f"Invariants file not found: {opts.invariants_path}")
            return EXIT_CLI_ERROR
        if opts.generate_invariants and opts.invariants_path is not None:
            log("ERROR", "--generate-invariants and --invariants cannot be used together")
            return EXIT_CLI_ERROR

        source = self.source_label()
        try:
            contract = extract_contract(load_models(opts.schema_path, opts.metadata_ref))
            if opts.generate_invariants:
                log("INFO", f"Generating invariants from {source}")
                document = generate_invariants_file(contract, infer_functional_dependencies(contract))
                self.writer.write(json.dumps(document, indent=2 if opts.pretty else None))
                return EXIT_OK
            invariants = self.load_invariants()
        except (SchemaLoadError, InvariantsError) as exc:
            log("ERROR", str(exc))
            return EXIT_PARSE_ERROR

        if not contract.models:
            log("WARN", f"No models found in {source}")
        log("INFO", f"Auditing {source} ({len(contract.models)} models)")
        result = run_audit(contract, invariants, source, opts.no_timestamp)
        return self.emit(result)

    def source_label(self) -> str:
        opts = self.options
        return opts.metadata_ref or opts.schema_path or CONFIG["INPUT"]["DEFAULT_SCHEMA_PATH"]

    def load_invariants(self) -> Optional[ParsedInvariants]:
        if self.options.invariants_path is not None:
            return load_invariants_file(Path(self.options.invariants_path))
        if self.options.demo:
            module_name, _, attr = CONFIG["INPUT"]["DEMO_INVARIANTS"].partition(":")
            return parse_invariants_document(getattr(importlib.import_module(module_name), attr))
        return None

    def emit(self, result: AuditResult) -> int:
        opts = self.options
        if opts.output_format == "text":
            output = to_text(result, opts.findings_only)
        else:
            output = to_json(result, opts.pretty, opts.findings_only)
        self.writer.write(output)

        counts: Dict[str, int] = {}
        for f in result.findings:
            counts[f.severity.value] = counts.get(f.severity.value, 0) + 1
        summary = ", ".join(f"{counts.get(s.value, 0)} {s.value}" for s in Severity)
        log("INFO", f"Audit complete: {result.metadata.finding_count} findings ({summary})")

        if opts.fail_on is not None:
            threshold = SEVERITY_ORDER[opts.fail_on]
            if any(SEVERITY_ORDER[f.severity.value] >= threshold for f in result.findings):
                return EXIT_ISSUES
        return EXIT_OK


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Audit a relational schema for 1NF-BCNF and foreign-key hygiene.")
    parser.add_argument(
        "mode",
        nargs="?",
        choices=["demo"],
        help="Use 'demo' to audit the bundled SQLAlchemy demo schema with its invariants.",
    )
    source = parser.add_mutually_exclusive_group()
    source.add_argument(
        "--schema", help=f"Parsed-model JSON document (default: {CONFIG['INPUT']['DEFAULT_SCHEMA_PATH']})"
    )
    source.add_argument("--metadata", help="SQLAlchemy MetaData or declarative base as module:attribute")
    parser.add_argument("--invariants", help="Invariants JSON document with declared functional dependencies")
    parser.add_argument("--format", choices=["json", "text"], default=CONFIG["OUTPUT"]["FORMAT"])
    parser.add_argument("--out", help="Write output to this file instead of stdout")
    parser.add_argument(
        "--fail-on",
        choices=["error", "warning", "info"],
        help="Exit 1 when a finding at this severity or above is reported",
    )
    parser.add_argument("--no-timestamp", action="store_true", help="Omit the timestamp from metadata")
    parser.add_argument("--pretty", action="store_true", default=CONFIG["OUTPUT"]["PRETTY"])
    parser.add_argument("--findings-only", action="store_true", help="Omit the contract from the output")
    parser.add_argument(
        "--generate-invariants",
        action="store_true",
        help="Emit an invariants document derived from PK/unique constraints",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    demo = args.mode == "demo"
    metadata_ref = args.metadata or CONFIG["INPUT"]["METADATA"]
    if demo and args.schema is None and args.metadata is None:
        metadata_ref = CONFIG["INPUT"]["DEMO_METADATA"]
    options = RunOptions(
        schema_path=args.schema,
        metadata_ref=metadata_ref,
        invariants_path=args.invariants or CONFIG["INPUT"]["INVARIANTS"],
        output_format=args.format,
        out_path=args.out,
        fail_on=args.fail_on,
        no_timestamp=args.no_timestamp,
        pretty=args.pretty,
        findings_only=args.findings_only,
        generate_invariants=args.generate_invariants,
        demo=demo,
    )
    return Runner(options).run()


if __name__ == "__main__":
    sys.exit(main())
