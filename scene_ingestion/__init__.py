"""Ambient Occlusion Baker — Scene Ingestion Package.

Decoded scene primitives, scene-graph flattening, and procedural test scenes.
"""
