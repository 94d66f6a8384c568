# Copyright (c) Syntropy Systems
"""Pydantic models for crater."""
