"""
dataset.py
~~~~~~~~~~

Training datasets: ordered lists of (input, label) samples stored as JSON
records of the form ``{"input": [...], "label": [...]}``.
"""

import json
import logging
from typing import Any, Iterable, List, NamedTuple

from .exceptions import DatasetError

logger = logging.getLogger(__name__)


class Sample(NamedTuple):
    """One training example."""
    input: List[float]
    label: List[float]


def samples_from_records(records: Any) -> List[Sample]:
    """
    Convert a list of ``{"input": [...], "label": [...]}`` records to samples.

    Raises:
        DatasetError: If the records are not in that form
    """
    if not isinstance(records, list):
        raise DatasetError(
            f"Dataset must be a list of records, got {type(records).__name__}"
        )

    samples = []
    for index, record in enumerate(records):
        try:
            samples.append(Sample(
                [float(x) for x in record['input']],
                [float(y) for y in record['label']]
            ))
        except (KeyError, TypeError, ValueError) as e:
            raise DatasetError(f"Malformed dataset record {index}: {e!r}") from e
    return samples


def samples_to_records(samples: Iterable) -> List[dict]:
    """Convert ``(input, label)`` pairs to JSON-ready records."""
    return [
        {'input': [float(x) for x in input_vector], 'label': [float(y) for y in label]}
        for input_vector, label in samples
    ]


def load_dataset(path: str) -> List[Sample]:
    """
    Read a dataset file.

    Raises:
        OSError: If the file cannot be read
        DatasetError: If the file is not a valid dataset
    """
    with open(path, 'r', encoding='utf-8') as f:
        try:
            records = json.load(f)
        except json.JSONDecodeError as e:
            raise DatasetError(f"Invalid dataset JSON in {path}: {e}") from e

    samples = samples_from_records(records)
    logger.info(f"Loaded {len(samples)} samples from {path}")
    return samples


def save_dataset(path: str, samples: Iterable) -> None:
    """
    Write ``(input, label)`` pairs to a dataset file.

    Raises:
        OSError: If the file cannot be written
    """
    records = samples_to_records(samples)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(records, f)
    logger.info(f"Saved {len(records)} samples to {path}")
