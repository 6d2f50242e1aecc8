"""
Requirement Catalog Service.

Loads the versioned YAML catalog, validates it, seeds it into the
reference tables and answers catalog lookups for the rest of the engine.

Document layout (see ``compliance/data/requirement_catalog.yaml``):
    version        — stamped onto every seeded row
    role_chain     — ordered progression path, e.g. IN → IT → IP → IC → AP
    default_tiers  — tier a role falls back to after a role change
    tier_policy    — roles restricted to a subset of tiers (IC: robust only)
    templates      — (role, tier) requirement lists; ``extends`` inherits
    progression    — requirement names gating each role transition

Usage:
    from compliance.services.catalog import load_catalog, seed_catalog

    document = load_catalog(app.config["COMPLIANCE_CATALOG_PATH"])
    counts = seed_catalog(document)
    db.session.commit()
"""

import logging
from dataclasses import dataclass, field

import yaml

from compliance.core.exceptions import CatalogError
from compliance.models import db
from compliance.models.catalog import (
    CATEGORIES,
    REQUIREMENT_TYPES,
    ROLES,
    TIERS,
    ProgressionRequirement,
    RequirementDefinition,
    ValidationRules,
)

logger = logging.getLogger(__name__)


# ── Document types ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RequirementSpec:
    name: str
    description: str
    category: str
    requirement_type: str
    validation_rules: ValidationRules
    is_mandatory: bool
    points_value: int
    due_days_from_assignment: int


@dataclass(frozen=True)
class CatalogDocument:
    """Parsed, validated catalog.  ``templates`` already has ``extends`` resolved."""

    version: str
    role_chain: tuple[str, ...]
    default_tiers: dict = field(default_factory=dict)
    tier_policy: dict = field(default_factory=dict)
    templates: dict = field(default_factory=dict)     # (role, tier) → tuple[RequirementSpec]
    progression: dict = field(default_factory=dict)   # (from, to) → tuple[str]


# ── Loading & validation ─────────────────────────────────────────────────────


def load_catalog(path: str) -> CatalogDocument:
    """Read and validate the catalog file at *path*.

    Raises:
        CatalogError: file missing, not YAML, or semantically invalid.
    """
    try:
        with open(path, encoding="utf-8") as fh:
            raw = yaml.safe_load(fh)
    except OSError as exc:
        raise CatalogError(f"Cannot read catalog {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise CatalogError(f"Catalog {path} is not valid YAML: {exc}") from exc

    document = parse_catalog(raw)
    logger.info(
        "Catalog %s loaded: %d templates, %d progression paths",
        document.version, len(document.templates), len(document.progression),
    )
    return document


def parse_catalog(raw) -> CatalogDocument:
    """Validate an already-decoded catalog mapping."""
    if not isinstance(raw, dict):
        raise CatalogError("Catalog root must be a mapping")

    version = raw.get("version")
    if not version:
        raise CatalogError("Catalog 'version' is required")

    role_chain = tuple(raw.get("role_chain") or ())
    for role in role_chain:
        _check_role(role, "role_chain")
    if len(set(role_chain)) != len(role_chain):
        raise CatalogError("role_chain must not repeat a role")

    tier_policy = {}
    for role, tiers in (raw.get("tier_policy") or {}).items():
        _check_role(role, "tier_policy")
        allowed = tuple(tiers or ())
        if not allowed:
            raise CatalogError(f"tier_policy for {role} must allow at least one tier")
        for tier in allowed:
            _check_tier(tier, f"tier_policy.{role}")
        tier_policy[role] = allowed

    default_tiers = {}
    for role, tier in (raw.get("default_tiers") or {}).items():
        _check_role(role, "default_tiers")
        _check_tier(tier, f"default_tiers.{role}")
        if role in tier_policy and tier not in tier_policy[role]:
            raise CatalogError(f"default tier {tier} for {role} violates tier_policy")
        default_tiers[role] = tier

    templates = _parse_templates(raw.get("templates") or [])
    for role, tier in templates:
        if role in tier_policy and tier not in tier_policy[role]:
            raise CatalogError(f"Template {role}/{tier} violates tier_policy")

    progression = {}
    for entry in raw.get("progression") or []:
        from_role, to_role = entry.get("from"), entry.get("to")
        _check_role(from_role, "progression.from")
        _check_role(to_role, "progression.to")
        names = tuple(entry.get("requirements") or ())
        known = {
            spec.name
            for (role, _tier), specs in templates.items() if role == from_role
            for spec in specs
        }
        missing = [n for n in names if n not in known]
        if missing:
            raise CatalogError(
                f"Progression {from_role}->{to_role} references unknown "
                f"requirement(s): {', '.join(missing)}"
            )
        progression[(from_role, to_role)] = names

    return CatalogDocument(
        version=str(version),
        role_chain=role_chain,
        default_tiers=default_tiers,
        tier_policy=tier_policy,
        templates=templates,
        progression=progression,
    )


def _parse_templates(entries) -> dict:
    declared = {}
    parents = {}
    for entry in entries:
        role, tier = entry.get("role"), entry.get("tier")
        _check_role(role, "templates")
        _check_tier(tier, f"templates.{role}")
        if (role, tier) in declared:
            raise CatalogError(f"Duplicate template {role}/{tier}")
        declared[(role, tier)] = tuple(
            _parse_requirement(item, role, tier) for item in entry.get("requirements") or []
        )
        if entry.get("extends"):
            parents[(role, tier)] = (role, entry["extends"])

    resolved = {}

    def resolve(key, seen=()):
        if key in resolved:
            return resolved[key]
        if key in seen:
            raise CatalogError(f"Template {key[0]}/{key[1]} extends itself")
        specs = declared[key]
        parent = parents.get(key)
        if parent:
            if parent not in declared:
                raise CatalogError(
                    f"Template {key[0]}/{key[1]} extends missing {parent[0]}/{parent[1]}"
                )
            specs = resolve(parent, seen + (key,)) + specs
        names = [s.name for s in specs]
        if len(set(names)) != len(names):
            raise CatalogError(f"Template {key[0]}/{key[1]} repeats a requirement name")
        resolved[key] = specs
        return specs

    for key in declared:
        resolve(key)
    return resolved


def _parse_requirement(item, role, tier) -> RequirementSpec:
    where = f"{role}/{tier}"
    if not isinstance(item, dict) or not item.get("name"):
        raise CatalogError(f"Every requirement in {where} needs a name")
    name = item["name"]
    category = item.get("category")
    if category not in CATEGORIES:
        raise CatalogError(f"{where} '{name}': unknown category {category!r}")
    req_type = item.get("type")
    if req_type not in REQUIREMENT_TYPES:
        raise CatalogError(f"{where} '{name}': unknown type {req_type!r}")
    points = item.get("points", 0)
    due_days = item.get("due_days", 30)
    for key, value in (("points", points), ("due_days", due_days)):
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise CatalogError(f"{where} '{name}': {key} must be a non-negative integer")
    return RequirementSpec(
        name=name,
        description=item.get("description") or "",
        category=category,
        requirement_type=req_type,
        validation_rules=ValidationRules.from_dict(item.get("validation_rules")),
        is_mandatory=bool(item.get("mandatory", True)),
        points_value=points,
        due_days_from_assignment=due_days,
    )


def _check_role(role, where):
    if role not in ROLES:
        raise CatalogError(f"Unknown role {role!r} in {where}")


def _check_tier(tier, where):
    if tier not in TIERS:
        raise CatalogError(f"Unknown tier {tier!r} in {where}")


# ── Seeding ──────────────────────────────────────────────────────────────────


def seed_catalog(document: CatalogDocument) -> dict:
    """Upsert the document into the reference tables.

    Definitions are matched on (role, tier, name) and updated in place so
    existing compliance records keep pointing at them.  Definitions that
    left the document are kept (records reference them) but no longer
    assigned.  Progression rows mirror the document exactly.

    Flushes only; the caller commits.

    Returns:
        {"created": int, "updated": int, "progression": int, "version": str}
    """
    existing = {
        (d.role, d.tier, d.name): d for d in RequirementDefinition.query.all()
    }
    created = updated = 0
    for (role, tier), specs in document.templates.items():
        for order, spec in enumerate(specs, start=1):
            definition = existing.get((role, tier, spec.name))
            if definition is None:
                definition = RequirementDefinition(role=role, tier=tier, name=spec.name)
                db.session.add(definition)
                created += 1
            elif definition.catalog_version != document.version:
                updated += 1
            definition.description = spec.description
            definition.category = spec.category
            definition.requirement_type = spec.requirement_type
            definition.validation_rules = spec.validation_rules
            definition.is_mandatory = spec.is_mandatory
            definition.points_value = spec.points_value
            definition.due_days_from_assignment = spec.due_days_from_assignment
            definition.display_order = order
            definition.catalog_version = document.version

    ProgressionRequirement.query.delete()
    path_rows = 0
    for (from_role, to_role), names in document.progression.items():
        for name in names:
            db.session.add(ProgressionRequirement(
                from_role=from_role,
                to_role=to_role,
                requirement_name=name,
                catalog_version=document.version,
            ))
            path_rows += 1
    db.session.flush()

    logger.info(
        "Catalog %s seeded: %d created, %d updated, %d progression rows",
        document.version, created, updated, path_rows,
    )
    return {
        "created": created,
        "updated": updated,
        "progression": path_rows,
        "version": document.version,
    }


# ── Lookups ──────────────────────────────────────────────────────────────────


class RequirementCatalog:
    """Read-only catalog view shared by the engine components.

    Role chain and tier policy come from the loaded document; definitions
    and progression mappings are read from the rows the loaded version
    seeded, so record foreign keys always resolve and definitions dropped
    from the document are no longer assigned.
    """

    def __init__(self, document: CatalogDocument):
        self.document = document

    @property
    def version(self) -> str:
        return self.document.version

    def definitions_for(self, role: str, tier: str) -> list[RequirementDefinition]:
        return (
            RequirementDefinition.query
            .filter_by(role=role, tier=tier, catalog_version=self.document.version)
            .order_by(RequirementDefinition.display_order, RequirementDefinition.id)
            .all()
        )

    def has_template(self, role: str, tier: str) -> bool:
        return (role, tier) in self.document.templates

    def next_role(self, role: str) -> str | None:
        chain = self.document.role_chain
        if role not in chain:
            return None
        idx = chain.index(role)
        return chain[idx + 1] if idx + 1 < len(chain) else None

    def allowed_tiers(self, role: str) -> tuple[str, ...]:
        return self.document.tier_policy.get(role, TIERS)

    def tier_allowed(self, role: str, tier: str) -> bool:
        return tier in self.allowed_tiers(role)

    def default_tier(self, role: str) -> str:
        return self.document.default_tiers.get(role) or self.allowed_tiers(role)[0]

    def progression_requirement_names(self, from_role: str, to_role: str) -> list[str]:
        rows = (
            ProgressionRequirement.query
            .filter_by(
                from_role=from_role, to_role=to_role, catalog_version=self.document.version,
            )
            .order_by(ProgressionRequirement.id)
            .all()
        )
        return [r.requirement_name for r in rows]
