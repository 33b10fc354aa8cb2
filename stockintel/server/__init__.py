"""
FastAPI surface for the intelligence pipeline.
"""
