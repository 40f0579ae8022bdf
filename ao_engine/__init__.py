"""Ambient Occlusion Baker — AO Engine Package.

Ray/triangle intersection, uniform grid acceleration, stratified hemisphere
sampling, sample point generation, and occlusion accumulation.
"""
