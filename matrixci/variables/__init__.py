"""
Variable substitution module.
Resolves ${VAR} references against leg, trigger and step variables.
"""

from .substitution import VariableSubstitutor

__all__ = ['VariableSubstitutor']
