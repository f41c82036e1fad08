"""BreathLens - Runtime Support (device, video, errors)"""
