"""
The Ecosystem package.
Reads ecosystem files (YAML or JSON) into validated app and deploy descriptors.
"""
from .schema import AppSpec, DeployTarget, Ecosystem, EcosystemError, LogSettings
from .units import convert_date_format, parse_duration, parse_memory
from .loader import load_ecosystem, parse_app, parse_deploy

__all__ = [
    "AppSpec", "DeployTarget", "Ecosystem", "EcosystemError", "LogSettings",
    "convert_date_format", "parse_duration", "parse_memory",
    "load_ecosystem", "parse_app", "parse_deploy",
]
