"""Adapters layer for Clinical-ETL.

This module contains input/output adapters that interface with external systems.
Adapters implement Port interfaces defined in the domain layer: format adapters
turn source bytes into canonical observations, storage adapters implement the
keyed store with its conditional versioned write.
"""
