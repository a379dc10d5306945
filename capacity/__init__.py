"""Capacity planning."""
from capacity.projector import CapacityProjector, load_plans, project_usage
