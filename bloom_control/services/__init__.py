"""
Control plane services.
"""
