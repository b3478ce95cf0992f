"""Export and import of trained models together with their trace metadata.

Container Structure (one directory):
- model.pkl: the pickled model object, anything exposing score(features) -> float
- metadata.json: the CallStackMetadata the model was trained with

Both files are required on import. Only load containers from trusted
sources: unpickling runs arbitrary code.
"""

import json
import logging
import pickle
from dataclasses import dataclass
from pathlib import Path

from pydantic import ValidationError

from callstack_anomaly.detectors import AnomalyModel
from callstack_anomaly.errors import ModelContainerError
from callstack_anomaly.models import CallStackMetadata


logger = logging.getLogger(__name__)

MODEL_FILE_NAME = 'model.pkl'
METADATA_FILE_NAME = 'metadata.json'


@dataclass
class ModelContainer:
    model: AnomalyModel
    metadata: CallStackMetadata
    path: Path


def export_model_container(directory: str | Path, model: AnomalyModel, metadata: CallStackMetadata) -> Path:
    """Write a model and its metadata into directory (created if needed).

    Raises:
        ModelContainerError: If either file cannot be written
    """
    directory = Path(directory)
    try:
        directory.mkdir(parents=True, exist_ok=True)
        with open(directory / MODEL_FILE_NAME, 'wb') as f:
            pickle.dump(model, f, protocol=pickle.HIGHEST_PROTOCOL)
        with open(directory / METADATA_FILE_NAME, 'w', encoding='utf-8') as f:
            json.dump(metadata.model_dump(mode='json'), f, indent=2)
    except (OSError, pickle.PicklingError) as e:
        raise ModelContainerError(f'Cannot export model container to {directory}: {e}') from e

    logger.info(f'Exported model container to {directory} (dimensions {metadata.dimensions})')
    return directory


def import_model_container(directory: str | Path) -> ModelContainer:
    """Load a model container.

    Raises:
        ModelContainerError: If a file is missing or cannot be loaded
    """
    directory = Path(directory)
    model_file = directory / MODEL_FILE_NAME
    metadata_file = directory / METADATA_FILE_NAME

    missing = [path.name for path in (model_file, metadata_file) if not path.is_file()]
    if missing:
        raise ModelContainerError(f'Incomplete model container {directory}: missing {", ".join(missing)}')

    try:
        with open(metadata_file, encoding='utf-8') as f:
            metadata = CallStackMetadata(**json.load(f))
    except (OSError, json.JSONDecodeError, TypeError, ValidationError) as e:
        raise ModelContainerError(f'Cannot load model metadata {metadata_file}: {e}') from e

    try:
        with open(model_file, 'rb') as f:
            model = pickle.load(f)
    except (OSError, pickle.UnpicklingError, EOFError, AttributeError, ImportError) as e:
        raise ModelContainerError(f'Cannot load model {model_file}: {e}') from e

    if not callable(getattr(model, 'score', None)):
        raise ModelContainerError(f'Model in {model_file} has no score() method')

    logger.debug(f'Imported model container {directory} (dimensions {metadata.dimensions})')
    return ModelContainer(model=model, metadata=metadata, path=directory)
