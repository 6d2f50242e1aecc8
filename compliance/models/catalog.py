"""
Compliance Tier Engine
Requirement catalog models.

Models:
    - RequirementDefinition: one trackable item for a (role, tier) template.
    - ProgressionRequirement: requirement names gating a role transition.

Both tables are reference data written only by catalog seeding
(``compliance.services.catalog.seed_catalog``) and read-only at runtime.
"""

import json
from dataclasses import asdict, dataclass

from compliance.core.exceptions import CatalogError
from compliance.models import db

# ── Constants ────────────────────────────────────────────────────────────────

ROLES = ("SA", "AD", "AP", "IC", "IP", "IT", "IN")

ROLE_LABELS = {
    "SA": "System Admin",
    "AD": "Administrator",
    "AP": "Authorized Provider",
    "IC": "Instructor Certified",
    "IP": "Instructor Provisional",
    "IT": "Instructor Trainee",
    "IN": "Instructor New",
}

TIERS = ("basic", "robust")

REQUIREMENT_TYPES = frozenset({"certification", "training", "document", "assessment"})

CATEGORIES = frozenset({
    "certification",
    "training",
    "documentation",
    "assessment",
    "pedagogy",
    "performance",
    "administration",
    "outreach",
    "portfolio",
    "planning",
    "mentorship",
    "project",
    "research",
    "quality",
})


# ── Validation rules (opaque to the engine, typed at the boundary) ──────────

@dataclass(frozen=True)
class ValidationRules:
    """Evidence constraints interpreted by the evidence-collection UI."""

    file_types: tuple[str, ...] = ()
    max_file_size: int | None = None
    min_score: int | None = None
    required_fields: tuple[str, ...] = ()

    _KEYS = ("file_types", "max_file_size", "min_score", "required_fields")

    @classmethod
    def from_dict(cls, data: dict | None) -> "ValidationRules":
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise CatalogError(f"validation_rules must be a mapping, got {type(data).__name__}")
        unknown = set(data) - set(cls._KEYS)
        if unknown:
            raise CatalogError(f"Unknown validation rule(s): {', '.join(sorted(unknown))}")

        max_size = data.get("max_file_size")
        min_score = data.get("min_score")
        for key, value in (("max_file_size", max_size), ("min_score", min_score)):
            if value is not None and (not isinstance(value, int) or value < 0):
                raise CatalogError(f"{key} must be a non-negative integer")
        return cls(
            file_types=tuple(str(t) for t in data.get("file_types") or ()),
            max_file_size=max_size,
            min_score=min_score,
            required_fields=tuple(str(f) for f in data.get("required_fields") or ()),
        )

    def to_dict(self) -> dict:
        out = asdict(self)
        out["file_types"] = list(self.file_types)
        out["required_fields"] = list(self.required_fields)
        return {k: v for k, v in out.items() if v not in (None, [])}


# ── Models ───────────────────────────────────────────────────────────────────

class RequirementDefinition(db.Model):
    """
    A single requirement within a (role, tier) template.

    The same requirement name may appear in both tiers of a role; those rows
    describe the same real-world item, which is how completed work is carried
    across a tier switch.
    """

    __tablename__ = "requirement_definitions"
    __table_args__ = (
        db.UniqueConstraint("role", "tier", "name", name="uq_reqdef_role_tier_name"),
        db.Index("idx_reqdef_role_tier", "role", "tier"),
    )

    id = db.Column(db.Integer, primary_key=True)
    role = db.Column(db.String(4), nullable=False)
    tier = db.Column(db.String(10), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(
        db.String(40), nullable=False,
        comment="certification | training | documentation | assessment | pedagogy | …",
    )
    requirement_type = db.Column(
        db.String(20), nullable=False,
        comment="certification | training | document | assessment",
    )
    validation_rules_json = db.Column(db.Text, nullable=False, default="{}")
    is_mandatory = db.Column(db.Boolean, nullable=False, default=True)
    points_value = db.Column(db.Integer, nullable=False, default=0)
    due_days_from_assignment = db.Column(db.Integer, nullable=False, default=30)
    display_order = db.Column(db.Integer, nullable=False, default=0)
    catalog_version = db.Column(db.String(40), nullable=True)

    @property
    def validation_rules(self) -> ValidationRules:
        try:
            return ValidationRules.from_dict(json.loads(self.validation_rules_json or "{}"))
        except (json.JSONDecodeError, TypeError, CatalogError):
            return ValidationRules()

    @validation_rules.setter
    def validation_rules(self, rules: ValidationRules) -> None:
        self.validation_rules_json = json.dumps(rules.to_dict())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role,
            "tier": self.tier,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "requirement_type": self.requirement_type,
            "validation_rules": self.validation_rules.to_dict(),
            "is_mandatory": self.is_mandatory,
            "points_value": self.points_value,
            "due_days_from_assignment": self.due_days_from_assignment,
            "display_order": self.display_order,
            "catalog_version": self.catalog_version,
        }

    def __repr__(self):
        return f"<RequirementDefinition {self.role}/{self.tier}: {self.name}>"


class ProgressionRequirement(db.Model):
    """Requirement (by name, within ``from_role``) gating ``from_role → to_role``."""

    __tablename__ = "progression_requirements"
    __table_args__ = (
        db.UniqueConstraint(
            "from_role", "to_role", "requirement_name",
            name="uq_progreq_path_name",
        ),
        db.Index("idx_progreq_path", "from_role", "to_role"),
    )

    id = db.Column(db.Integer, primary_key=True)
    from_role = db.Column(db.String(4), nullable=False)
    to_role = db.Column(db.String(4), nullable=False)
    requirement_name = db.Column(db.String(200), nullable=False)
    catalog_version = db.Column(db.String(40), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "from_role": self.from_role,
            "to_role": self.to_role,
            "requirement_name": self.requirement_name,
        }

    def __repr__(self):
        return f"<ProgressionRequirement {self.from_role}->{self.to_role}: {self.requirement_name}>"
