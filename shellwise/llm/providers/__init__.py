"""LLM provider implementations."""

from .lm_studio_provider import LMStudioProvider

__all__ = ['LMStudioProvider']
