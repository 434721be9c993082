"""
Experiment loader for YAML experiment definitions.
"""

import logging
import yaml
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import Variation

logger = logging.getLogger(__name__)


class Experiment:
    """Represents a single experiment: one page, one request, several variations."""

    def __init__(self, file_path: Path, data: Dict[str, Any]):
        """
        Initialize experiment.

        Args:
            file_path: Path to the YAML file
            data: Parsed YAML data
        """
        self.file_path = file_path
        self.data = data

        self.id = data.get('id', file_path.stem)
        self.name = data.get('name', self.id)
        self.url = data.get('url', '')
        self.request = data.get('request', '')
        self.wait_timeout = data.get('wait_timeout')
        self.element_database = data.get('element_database')
        self.variation_data = data.get('variations') or []

        if not self.url:
            raise ValueError(f"Experiment {self.id} has no url")
        if not self.variation_data:
            raise ValueError(f"Experiment {self.id} defines no variations")

    def get_variations(self) -> List[Variation]:
        """
        Build fresh Variation objects for a run.

        Returns:
            Variations numbered in file order
        """
        variations = []
        for number, item in enumerate(self.variation_data, 1):
            variations.append(Variation(
                id=item.get('id', f"{self.id}-v{number}"),
                name=item.get('name', f"Variation {number}"),
                css=item.get('css'),
                js=item.get('js'),
                description=item.get('description', ''),
                number=number
            ))
        return variations

    def get_page_data(self) -> Dict[str, Any]:
        """Page context handed to the code generator."""
        return {
            "url": self.url,
            "title": self.name,
            "element_database": self.element_database
        }

    def __repr__(self):
        return f"Experiment(id={self.id}, name={self.name}, variations={len(self.variation_data)})"


class ExperimentLoader:
    """Loads experiment definitions from YAML files."""

    def __init__(self, data_dir: str = None):
        """
        Initialize experiment loader.

        Args:
            data_dir: Directory containing experiment YAML files. If None,
                uses the experiments/ directory next to the package
        """
        if data_dir is None:
            data_dir = Path(__file__).parent.parent / "experiments"

        self.data_dir = Path(data_dir)

    def load_file(self, path: str) -> Experiment:
        """
        Load a single experiment file.

        Raises:
            FileNotFoundError: If the file does not exist
            ValueError: If the file is empty or incomplete
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Experiment file not found: {path}")

        with open(path, 'r') as f:
            data = yaml.safe_load(f)

        if not data:
            raise ValueError(f"Experiment file is empty: {path}")

        return Experiment(path, data)

    def load_from_directory(self) -> List[Experiment]:
        """
        Load every experiment in the data directory.

        Files that fail to load are skipped with a warning.
        """
        if not self.data_dir.exists():
            raise FileNotFoundError(f"Data directory not found: {self.data_dir}")

        experiments = []
        for yaml_file in sorted(self.data_dir.glob("*.yaml")):
            try:
                experiments.append(self.load_file(yaml_file))
            except (ValueError, yaml.YAMLError) as e:
                logger.warning("Failed to load %s: %s", yaml_file, e)

        return experiments

    def load_by_id(self, experiment_id: str) -> Optional[Experiment]:
        """
        Load a specific experiment by ID.

        Returns:
            Experiment or None if not found
        """
        for experiment in self.load_from_directory():
            if experiment.id == experiment_id:
                return experiment
        return None
