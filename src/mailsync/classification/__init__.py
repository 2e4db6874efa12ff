"""Message classification."""

from .classifier import Classifier, LLMClassifier, parse_classification

__all__ = ["Classifier", "LLMClassifier", "parse_classification"]
