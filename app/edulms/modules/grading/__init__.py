"""
Grading Engine.

Sole writer of Grade rows. One grade per submission; regrading updates in place.
"""
