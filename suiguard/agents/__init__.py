"""
推理阶段：提示词与推理后端
"""

from .backend import ReasoningBackend, LLMReasoningBackend

__all__ = ["ReasoningBackend", "LLMReasoningBackend"]
