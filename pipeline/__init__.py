"""Ambient Occlusion Baker — Pipeline Package.

Bake runner and result persistence.
"""
