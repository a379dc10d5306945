"""Metric sources, clocks and the monitoring engine."""
