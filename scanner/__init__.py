"""
Market Pattern Scanner.

Finds two price patterns in equity markets:
- ATH recovery: deep crashes from the all-time high with repeated strong recoveries
- Spikes: stable base price with temporary spikes far above it

Modules:
- growth / spikes: pattern detectors over daily bars
- validator: data sanity checks
- budget: deadline-bounded batch processing
- scan_log: per-run audit trail
- ath_scanner / spike_scanner: run orchestrators
- health: upstream and store probe
"""

from scanner.growth import GrowthAnalysis, GrowthEvent, analyze_growth_events, triangular_score
from scanner.spikes import SpikeAnalysis, SpikeEvent, analyze_spike_events
from scanner.scan_log import DetailResult, ScanDetail, ScanRecorder, ScanResult, ScanStatus
from scanner.ath_scanner import AthRecoveryScanner, run_ath_scan
from scanner.spike_scanner import SpikeScanner, prioritize_candidates, run_spike_scan
from scanner.health import run_health_check

__all__ = [
    # Detectors
    "GrowthAnalysis",
    "GrowthEvent",
    "analyze_growth_events",
    "triangular_score",
    "SpikeAnalysis",
    "SpikeEvent",
    "analyze_spike_events",
    # Runs
    "DetailResult",
    "ScanDetail",
    "ScanRecorder",
    "ScanResult",
    "ScanStatus",
    "AthRecoveryScanner",
    "run_ath_scan",
    "SpikeScanner",
    "prioritize_candidates",
    "run_spike_scan",
    "run_health_check",
]
