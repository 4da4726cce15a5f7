"""setupwizard core.

The orchestration engine of the setup wizard. Steps come from plugins that
register themselves explicitly; everything in here is step-agnostic.
"""

from setupwizard.core.config import ConfigResolver, WizardSettings
from setupwizard.core.context import RunContext, RunState
from setupwizard.core.errors import (
    CommitError,
    ConfigError,
    ConfigurationError,
    DependencyUnmetError,
    DuplicateStepError,
    ExternalCallError,
    SetupWizardError,
    StateError,
    StepNotFoundError,
    StorageError,
    ValidationError,
)
from setupwizard.core.events import EventBus, get_event_bus
from setupwizard.core.installer import InstallationManager, InstallationResult, InstallOptions
from setupwizard.core.lifecycle import StepLifecycle, StepState
from setupwizard.core.logging import VerbosityLevel, get_logger, set_verbosity
from setupwizard.core.marker import CompletionMarker
from setupwizard.core.requirements import RequirementChecker, RequirementReport
from setupwizard.core.schema import SchemaIntrospector
from setupwizard.core.session import FileSession, MemorySession
from setupwizard.core.staging import StagedDataStore, StagedSnapshot
from setupwizard.core.steps import StepDescriptor, StepRegistry
from setupwizard.core.storage import SqliteStore
from setupwizard.core.validator import StepValidator, ValidationResult
from setupwizard.core.wizard import Wizard

__all__ = [
    # Config
    "ConfigResolver",
    "WizardSettings",
    # Context
    "RunContext",
    "RunState",
    "StagedDataStore",
    "StagedSnapshot",
    "MemorySession",
    "FileSession",
    # Errors
    "SetupWizardError",
    "ConfigError",
    "ConfigurationError",
    "DuplicateStepError",
    "StepNotFoundError",
    "ValidationError",
    "DependencyUnmetError",
    "ExternalCallError",
    "CommitError",
    "StateError",
    "StorageError",
    # Events
    "EventBus",
    "get_event_bus",
    # Steps
    "StepDescriptor",
    "StepRegistry",
    "StepValidator",
    "ValidationResult",
    "StepLifecycle",
    "StepState",
    # Schema / storage
    "SchemaIntrospector",
    "SqliteStore",
    "CompletionMarker",
    # Installation
    "InstallationManager",
    "InstallationResult",
    "InstallOptions",
    "RequirementChecker",
    "RequirementReport",
    "Wizard",
    # Logging
    "VerbosityLevel",
    "get_logger",
    "set_verbosity",
]
