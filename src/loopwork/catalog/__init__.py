"""
Skill catalog — descriptor parsing, versioning, dependency graph and the
snapshot registry.
"""

from .catalog import Catalog, load_catalog
from .descriptor import SkillDescriptor, SkillHeader, parse_skill_document
from .graph import DependencyGraph
from .loader import SkillSource, discover_skill_sources
from .phases import Phase, PhaseInference, SkillCategory, infer_phase
from .registry import CatalogRegistry

__all__ = [
    "Catalog",
    "CatalogRegistry",
    "DependencyGraph",
    "Phase",
    "PhaseInference",
    "SkillCategory",
    "SkillDescriptor",
    "SkillHeader",
    "SkillSource",
    "discover_skill_sources",
    "infer_phase",
    "load_catalog",
    "parse_skill_document",
]
