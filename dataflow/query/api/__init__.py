"""
Query API

FastAPI read-model service.
"""
