"""
HTTP surface for the TrustPulse pipeline.

FastAPI app exposing submission intake, query, export and admin routes over
TrustPulsePipeline.
"""
