"""Abstract base class for species classifiers."""

import importlib
import logging
from abc import ABC, abstractmethod
from typing import List

import numpy as np

from ..errors import ConfigurationError
from ..models.analysis import Prediction

logger = logging.getLogger(__name__)


def pcm_to_float32(window: bytes, channels: int = 1) -> np.ndarray:
    """Convert little-endian int16 PCM to mono float32 in [-1, 1)."""
    samples = np.frombuffer(window, dtype="<i2").astype(np.float32) / 32768.0
    if channels > 1:
        samples = samples.reshape(-1, channels).mean(axis=1)
    return samples


class AbstractClassifier(ABC):
    """Opaque species classifier invoked once per analysis window."""

    sample_rate: int = 48000

    @abstractmethod
    def predict(self, samples: np.ndarray) -> List[Prediction]:
        """Classify one window.

        Args:
            samples: Mono float32 samples of exactly one window

        Returns:
            Predictions ranked by descending confidence
        """
        pass

    def initialize(self) -> bool:
        """Load model resources.

        Returns:
            True if initialization successful, False otherwise
        """
        return True

    def cleanup(self) -> None:
        """Release model resources."""
        pass


def load_classifier(dotted_path: str) -> AbstractClassifier:
    """Instantiate a classifier from a 'package.module:ClassName' path."""
    module_name, _, class_name = dotted_path.partition(":")
    if not module_name or not class_name:
        raise ConfigurationError(f"Classifier must be given as 'module:ClassName', got '{dotted_path}'")
    try:
        module = importlib.import_module(module_name)
        cls = getattr(module, class_name)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load classifier '{dotted_path}': {e}") from e

    classifier = cls()
    if not isinstance(classifier, AbstractClassifier):
        raise ConfigurationError(f"{dotted_path} is not an AbstractClassifier")
    logger.info(f"Loaded classifier {dotted_path}")
    return classifier
