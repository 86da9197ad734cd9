"""
Utility helpers for the control plane.
"""
