"""
hohmm model I/O module

Handles loading and saving HigherOrderHMM models:
- .json: Human-readable, fully portable (the only format used for saving)
- .pickle/.pkl: Pickled model objects (loading only)

The JSON document stores states, emissions (tagged by `type`), the explicit
transition elements and the final states. Forbidden elements created while
linking are rebuilt on load.
"""

import json
import os
import pickle
import warnings
from typing import Any, Dict, Optional, Tuple

from hohmm.core.emissions import DiscreteEmission, Emission, GaussianEmission
from hohmm.core.hmm import HigherOrderHMM
from hohmm.core.phylo import PhyloEmission
from hohmm.core.states import State
from hohmm.core.transition import Transition, TransitionElement

FORMAT_VERSION = '1.0'

EMISSION_TYPES = {
    DiscreteEmission.type_name: DiscreteEmission,
    GaussianEmission.type_name: GaussianEmission,
    PhyloEmission.type_name: PhyloEmission,
}


# =============================================================================
# Dict conversion
# =============================================================================

def emission_from_dict(d: Dict[str, Any]) -> Emission:
    kind = d.get('type')
    if kind not in EMISSION_TYPES:
        raise ValueError(f"Unknown emission type {kind!r}; expected one of {sorted(EMISSION_TYPES)}")
    return EMISSION_TYPES[kind].from_dict(d)


def model_to_dict(model: HigherOrderHMM) -> Dict[str, Any]:
    data = model.to_dict()
    data['version'] = FORMAT_VERSION
    return data


def model_from_dict(data: Dict[str, Any]) -> HigherOrderHMM:
    """Rebuild a model; emissions referenced by several states stay shared."""
    if data.get('model_type') != 'HigherOrderHMM':
        raise ValueError(f"Not a HigherOrderHMM document (model_type={data.get('model_type')!r})")
    emissions = [emission_from_dict(e) for e in data['emissions']]
    states = []
    for s in data['states']:
        slot = s.get('emission', -1)
        if slot is not None and slot >= len(emissions):
            raise ValueError(f"State {s['name']!r} refers to missing emission {slot}")
        emission = emissions[slot] if slot is not None and slot >= 0 else None
        states.append(State(s['name'], emission, forward=s.get('forward', True)))
    elements = [TransitionElement.from_dict(e) for e in data['transition']['elements']]
    transition = Transition(elements, [s.silent for s in states])
    return HigherOrderHMM(states, transition,
                          final_states=data.get('final_states'),
                          name=data.get('name'))


# =============================================================================
# Loading
# =============================================================================

def load_model(filepath: str) -> HigherOrderHMM:
    """
    Load a model from file.

    Supports (auto-detected by extension):
    - .json: JSON document written by save_model()
    - anything else: pickled HigherOrderHMM

    Args:
        filepath: Path to model file

    Returns:
        HigherOrderHMM instance
    """
    return load_model_with_metadata(filepath)[0]


def load_model_with_metadata(filepath: str) -> Tuple[HigherOrderHMM, Dict[str, Any]]:
    """
    Load a model and the free-form metadata saved next to it.

    Returns:
        (model, metadata)
    """
    if filepath.endswith('.json'):
        with open(filepath, 'r') as f:
            data = json.load(f)
        return model_from_dict(data), data.get('metadata', {})

    with open(filepath, 'rb') as f:
        obj = pickle.load(f)
    if isinstance(obj, HigherOrderHMM):
        return obj, {}
    if isinstance(obj, dict) and isinstance(obj.get('model'), HigherOrderHMM):
        return obj['model'], obj.get('metadata', {})
    raise ValueError(f"{filepath} does not contain a HigherOrderHMM")


# =============================================================================
# Saving
# =============================================================================

def save_model(model: HigherOrderHMM, filepath: str,
               metadata: Optional[Dict[str, Any]] = None) -> str:
    """
    Save model to file in JSON format.

    If the filepath does not end in .json, the extension is replaced with .json
    and a warning is issued.

    Args:
        model: HigherOrderHMM model
        filepath: Output path (.json)
        metadata: JSON-serialisable training metadata stored alongside

    Returns:
        The path actually written
    """
    if not filepath.endswith('.json'):
        old_path = filepath
        base, _ = os.path.splitext(filepath)
        filepath = base + '.json'
        warnings.warn(
            f"Only JSON format is supported for saving. "
            f"Saving to '{filepath}' instead of '{old_path}'."
        )

    data = model_to_dict(model)
    if metadata:
        data['metadata'] = metadata
    with open(filepath, 'w') as f:
        json.dump(data, f, indent=2)
    return filepath
