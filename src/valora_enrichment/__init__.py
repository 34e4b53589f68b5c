"""
Valora market-data enrichment.

Background refresh of security metadata, daily prices and FX rates, with
point-in-time currency conversion and base-currency reconciliation tracking.
"""

from .config import EnrichmentSettings, load_settings
from .conversion import ConversionResolver, derive_required_fx_pairs
from .exceptions import (
    ProviderConfigurationError,
    ReconciliationWriteError,
    StorageUnavailableError,
    UnsupportedCurrencyError,
    ValoraError,
    ValoraNotFoundError,
    ValoraValidationError,
)
from .models import (
    ConversionResult,
    ConversionSource,
    EnrichmentCategory,
    EnrichmentRun,
    EnrichmentScope,
    FailedItem,
    FxObservation,
    PanelState,
    ReconciliationState,
    ReconciliationStatus,
    RunStatus,
    StartRunResult,
)
from .panel import PanelStateProjector, export_failed_items
from .reconciliation import ReconciliationTracker
from .runs import EnrichmentRunManager
from .runtime import EnrichmentRuntime, create_runtime

__version__ = "0.1.0"

__all__ = [
    "ConversionResolver",
    "ConversionResult",
    "ConversionSource",
    "EnrichmentCategory",
    "EnrichmentRun",
    "EnrichmentRunManager",
    "EnrichmentRuntime",
    "EnrichmentScope",
    "EnrichmentSettings",
    "FailedItem",
    "FxObservation",
    "PanelState",
    "PanelStateProjector",
    "ProviderConfigurationError",
    "ReconciliationState",
    "ReconciliationStatus",
    "ReconciliationTracker",
    "ReconciliationWriteError",
    "RunStatus",
    "StartRunResult",
    "StorageUnavailableError",
    "UnsupportedCurrencyError",
    "ValoraError",
    "ValoraNotFoundError",
    "ValoraValidationError",
    "create_runtime",
    "derive_required_fx_pairs",
    "export_failed_items",
    "load_settings",
]
