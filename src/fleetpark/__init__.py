"""
FleetPark reservation engine

Reservation lifecycle for transportation companies booking parking lots:
state machine, role guard, availability allocation and pricing.
"""

__version__ = "1.0.0"
