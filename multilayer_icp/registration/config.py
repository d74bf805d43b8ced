"""Loading ICP parameters and matcher blocks from dicts and JSON files.

Both snake_case field names and the camelCase names used in external
parameter blocks are accepted:

    {
        "maxIterations": 50,
        "thresholdDist": 1.0,
        "minAbsStep_trans": 1e-7,
        "minAbsStep_rot": 1e-7,
        "weight_pt2pt_layers": {"edges": 1.0, "surfaces": 0.5},
        "pairingsWeightParameters": {"robust_kernel": "cauchy"}
    }

A matcher configuration file holds a list of ``{"class", "params"}`` blocks,
or an object with such a list under "matchers".
"""

import json
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Union

from .types import Parameters

PARAMETER_ALIASES = {
    "maxIterations": "max_iterations",
    "thresholdDist": "threshold_dist",
    "thresholdAng": "threshold_ang",
    "maxPairsPerLayer": "max_pairs_per_layer",
    "minAbsStep_trans": "min_abs_step_trans",
    "minAbsStep_rot": "min_abs_step_rot",
    "weightPt2PtLayers": "weight_pt2pt_layers",
    "pairingsWeightParameters": "pairings_weight_parameters",
    "decimationPhaseRotation": "decimation_phase_rotation",
}


def parameters_from_dict(data: Mapping[str, Any]) -> Parameters:
    """
    Build Parameters from a mapping.

    Raises:
        ValueError: On unknown keys or invalid values.
    """
    known = {f.name for f in fields(Parameters)}
    kwargs: Dict[str, Any] = {}
    for key, value in data.items():
        name = PARAMETER_ALIASES.get(key, key)
        if name not in known:
            raise ValueError(f"Unknown ICP parameter '{key}'")
        if name in kwargs:
            raise ValueError(f"ICP parameter '{name}' given twice")
        kwargs[name] = value

    # Parameters converts a nested pairings_weight_parameters mapping itself.
    return Parameters(**kwargs)


def parameters_to_dict(p: Parameters) -> Dict[str, Any]:
    """Plain-dict (JSON-serializable) form of ``p``."""
    return asdict(p)


def load_parameters(path: Union[str, Path]) -> Parameters:
    """Load Parameters from a JSON file."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a JSON object")
    return parameters_from_dict(data)


def save_parameters(p: Parameters, path: Union[str, Path]) -> None:
    """Write Parameters to a JSON file."""
    with open(path, "w", encoding="utf-8") as f:
        json.dump(parameters_to_dict(p), f, indent=2)


def load_matchers_config(path: Union[str, Path]) -> List[Dict[str, Any]]:
    """
    Load matcher blocks from a JSON file.

    Returns:
        List of ``{"class": <id>, "params": {...}}`` dicts, ready for
        ``ICP.initialize_matchers``.
    """
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("matchers")
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of matcher blocks")
    return data
