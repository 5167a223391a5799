"""Detection backend registry utility.

This module centralises detector discovery so that pipelines can select a
backend by name (configured per deployment) without hard-coding specific
classes.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Iterable

DetectorFactory = Callable[..., Any]

_REGISTRY: Dict[str, DetectorFactory] = {}


def register_detector(name: str) -> Callable[[DetectorFactory], DetectorFactory]:
    """Decorator to register a detector factory under ``name``.

    Parameters
    ----------
    name:
        Backend identifier selected via configuration.
    """

    def decorator(factory: DetectorFactory) -> DetectorFactory:
        key = name.lower()
        if key in _REGISTRY:
            raise ValueError(f"Detector already registered with name '{name}'")
        _REGISTRY[key] = factory
        return factory

    return decorator


def build_detector(name: str, **kwargs: Any) -> Any:
    """Instantiate the detector backend registered as ``name``.

    Raises
    ------
    KeyError
        If no detector is registered under the given name.
    """
    backend = _REGISTRY.get(name.lower())
    if backend is None:
        available = ", ".join(sorted(_REGISTRY))
        raise KeyError(f"Detector '{name}' not registered. Available: {available}")
    return backend(**kwargs)


def available_detectors() -> Iterable[str]:
    """Return registered backend names."""
    return _REGISTRY.keys()
