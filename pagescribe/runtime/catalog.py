from __future__ import annotations

from pagescribe.core.models import ModelInfo


_SIZE_SCALE = {
    "B": 1_000_000_000.0,
    "M": 1_000_000.0,
    "K": 1_000.0,
}


def _detail(model: ModelInfo, key: str) -> str:
    value = (model.details or {}).get(key)
    return value if isinstance(value, str) else ""


def parameter_size(model: ModelInfo) -> str:
    return _detail(model, "parameter_size")


def quantization_level(model: ModelInfo) -> str:
    return _detail(model, "quantization_level")


def parameter_count(model: ModelInfo) -> float:
    """`"7.6B"` -> 7.6e9. Unknown suffixes or values count as zero."""
    raw = parameter_size(model).strip()
    if not raw:
        return 0.0
    scale = _SIZE_SCALE.get(raw[-1].upper())
    if scale is None:
        return 0.0
    try:
        return float(raw[:-1]) * scale
    except ValueError:
        return 0.0


def sort_models(models: list[ModelInfo], by_size: bool = False) -> list[ModelInfo]:
    if by_size:
        return sorted(models, key=parameter_count)
    return sorted(models, key=lambda model: model.name)


def format_model_row(model: ModelInfo) -> str:
    return f" - {model.name:<40} {parameter_size(model):>10} {quantization_level(model):>10}"
