"""Template catalog boundary and candidate normalization."""

from strategy_copilot.candidates.catalog import (
    Branch,
    CatalogError,
    StaticTemplateCatalog,
    Template,
    TemplateCatalog,
    default_catalog,
    merge_patch,
)
from strategy_copilot.candidates.pipeline import (
    CandidateBatch,
    CandidateOverrides,
    ModelIdentity,
    build_candidates,
    normalize_candidate,
)

__all__ = [
    "Branch",
    "CandidateBatch",
    "CandidateOverrides",
    "CatalogError",
    "ModelIdentity",
    "StaticTemplateCatalog",
    "Template",
    "TemplateCatalog",
    "build_candidates",
    "default_catalog",
    "merge_patch",
    "normalize_candidate",
]
