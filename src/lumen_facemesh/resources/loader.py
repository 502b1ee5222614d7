import logging
from dataclasses import dataclass
from pathlib import Path

from ..exceptions import ModelLoadingError

logger = logging.getLogger(__name__)


@dataclass
class ModelResources:
    """Resolves model filenames inside a model directory.

    Attributes:
        model_dir: Directory holding the ``.onnx`` files, e.g.
            ``face_detection_back.onnx``, ``face_landmark.onnx``.

    Example:
        ```python
        resources = ModelResources(Path("~/.lumen/facemesh"))
        mesh_path = resources.get_model_file("face_landmark.onnx")
        ```
    """

    model_dir: Path

    def __post_init__(self) -> None:
        self.model_dir = Path(self.model_dir).expanduser()

    def get_model_file(self, filename: str) -> Path:
        """Get the full path to a model file.

        Raises:
            ValueError: If filename is empty.
            ModelLoadingError: If the file does not exist.
        """
        if not filename:
            raise ValueError("Model filename must not be empty")
        path = self.model_dir / filename
        if not path.is_file():
            raise ModelLoadingError(f"Model file not found: {path}")
        logger.debug("Resolved model %s -> %s", filename, path)
        return path

    def has_model_file(self, filename: str) -> bool:
        return bool(filename) and (self.model_dir / filename).is_file()

    def list_model_files(self) -> list[str]:
        if not self.model_dir.is_dir():
            return []
        return sorted(p.name for p in self.model_dir.glob("*.onnx"))
