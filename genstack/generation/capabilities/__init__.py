"""Pipeline stages."""

from genstack.generation.capabilities.base import Capability, CapabilityServices
from genstack.generation.capabilities.code_generation import CodeGenerationCapability
from genstack.generation.capabilities.compiler_check import CompilerCheckCapability
from genstack.generation.capabilities.planning import PlanningCapability
from genstack.generation.capabilities.template import TemplateCapability

__all__ = [
    "Capability",
    "CapabilityServices",
    "CodeGenerationCapability",
    "CompilerCheckCapability",
    "PlanningCapability",
    "TemplateCapability",
]
