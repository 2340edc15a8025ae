"""MedRide marketplace services."""
