"""Performance test tracking and regression detection."""
from perf.regression import RegressionDetector, PerformanceTestTracker
