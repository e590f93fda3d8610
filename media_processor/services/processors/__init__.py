"""
Media transformers and the archive extractor.
"""
