"""BreathLens API - HTTP adapter over the magnification engine"""
