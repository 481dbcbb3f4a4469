"""Loading BuildFarm documents from YAML."""

import logging
from pathlib import Path
from typing import Union

import yaml
from pydantic import ValidationError

from buildfarm.config.models import BuildFarm

logger = logging.getLogger(__name__)

FARM_KIND = "BuildFarm"


class ConfigLoadError(Exception):
    """Raised when configuration loading fails."""

    pass


class ConfigLoader:
    """
    Reads BuildFarm documents.

    A file may hold several YAML documents separated by ``---``, as kubectl
    manifests do. Documents of other kinds (e.g. a Secret shipped alongside)
    are skipped.
    """

    @staticmethod
    def parse_documents(text: str, source: str = "<string>") -> list[dict]:
        """
        Split YAML text into its non-empty documents.

        Raises:
            ConfigLoadError: If the YAML is malformed or a document is not a mapping
        """
        try:
            documents = [doc for doc in yaml.safe_load_all(text) if doc is not None]
        except yaml.YAMLError as e:
            raise ConfigLoadError(f"Failed to parse YAML in {source}: {e}") from e

        for index, doc in enumerate(documents):
            if not isinstance(doc, dict):
                raise ConfigLoadError(
                    f"Document {index} in {source} must be a YAML object, got {type(doc).__name__}"
                )
        return documents

    @staticmethod
    def farms_from_documents(documents: list[dict], source: str = "<string>") -> list[BuildFarm]:
        """
        Validate the BuildFarm documents among the given ones.

        Raises:
            ValidationError: If a BuildFarm document is invalid
        """
        farms = []
        for doc in documents:
            kind = doc.get("kind", FARM_KIND)
            if kind != FARM_KIND:
                logger.debug(f"Skipping {kind} document in {source}")
                continue
            farms.append(BuildFarm.model_validate(doc))
        return farms

    @staticmethod
    def load_from_dict(data: dict) -> BuildFarm:
        """
        Validate a single farm document.

        Raises:
            ValidationError: If configuration is invalid
        """
        return BuildFarm.model_validate(data)

    @staticmethod
    def load_from_yaml_string(yaml_str: str) -> BuildFarm:
        """
        Load exactly one BuildFarm from YAML text.

        Raises:
            ConfigLoadError: If the YAML is malformed or holds no or several farms
            ValidationError: If configuration is invalid
        """
        documents = ConfigLoader.parse_documents(yaml_str)
        farms = ConfigLoader.farms_from_documents(documents)
        if len(farms) != 1:
            raise ConfigLoadError(f"Expected one {FARM_KIND} document, found {len(farms)}")
        return farms[0]

    @staticmethod
    def load_from_file(file_path: Union[str, Path]) -> list[BuildFarm]:
        """
        Load every BuildFarm in a YAML file.

        Args:
            file_path: Path to the YAML file

        Returns:
            Validated farms in document order

        Raises:
            ConfigLoadError: If file cannot be read or parsed
            ValidationError: If a farm document is invalid
        """
        path = Path(file_path)

        if not path.exists():
            raise ConfigLoadError(f"Configuration file not found: {path}")

        if not path.is_file():
            raise ConfigLoadError(f"Path is not a file: {path}")

        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigLoadError(f"Failed to read file {path}: {e}") from e

        documents = ConfigLoader.parse_documents(text, str(path))
        try:
            return ConfigLoader.farms_from_documents(documents, str(path))
        except ValidationError as e:
            logger.error(f"Validation error in {path}: {e}")
            raise

    @staticmethod
    def load_multiple_from_directory(directory: Union[str, Path]) -> list[BuildFarm]:
        """
        Load the farms of every YAML file in a directory.

        Files that fail to load are logged and skipped. When two documents
        declare the same namespace/name, the first one (by file name) wins.

        Raises:
            ConfigLoadError: If directory cannot be read
        """
        path = Path(directory)

        if not path.exists():
            raise ConfigLoadError(f"Directory not found: {path}")

        if not path.is_dir():
            raise ConfigLoadError(f"Path is not a directory: {path}")

        yaml_files = sorted(list(path.glob("*.yaml")) + list(path.glob("*.yml")))
        if not yaml_files:
            logger.warning(f"No YAML files found in directory: {path}")
            return []

        farms: dict[str, BuildFarm] = {}
        origins: dict[str, Path] = {}
        for yaml_file in yaml_files:
            try:
                loaded = ConfigLoader.load_from_file(yaml_file)
            except (ConfigLoadError, ValidationError) as e:
                logger.error(f"Failed to load {yaml_file}: {e}")
                continue

            for farm in loaded:
                if farm.key in farms:
                    logger.error(
                        f"Farm {farm.key} in {yaml_file} is already defined in "
                        f"{origins[farm.key]}; ignoring it"
                    )
                    continue
                farms[farm.key] = farm
                origins[farm.key] = yaml_file
                logger.info(f"Loaded farm {farm.key} from {yaml_file}")

        return list(farms.values())
