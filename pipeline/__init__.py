"""
pipeline — Analysis orchestration.

The controller wires sensors → gateway → validator → state machine and
dispatches the resulting speech, transcript and emergency side effects.
"""
