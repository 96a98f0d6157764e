"""Shared value types and semantic aliases used throughout benchrig."""
