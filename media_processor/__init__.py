"""Staged, admission-controlled media processing worker"""
