"""
Exam scoring, analytics snapshots and AI coaching commentary.
"""
__version__ = "1.0.0"
