"""
Stage handlers and dispatch for the processing pipeline.
"""
