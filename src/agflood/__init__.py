"""
Agricultural Flood-Risk Scenario Batch Runner.

Drives a 2D hydraulic engine (HEC-RAS) across return-period scenarios,
extracts depth, velocity, duration and extent rasters from the plan
output, and summarises them per agricultural field for downstream
crop-yield modeling.
"""

__version__ = "0.1.0"
