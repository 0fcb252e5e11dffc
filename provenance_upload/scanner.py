"""
Module for turning selected local paths into files to upload.
"""
import logging
from pathlib import Path
from typing import Iterable, List, Tuple

logger = logging.getLogger(__name__)

SelectedFile = Tuple[Path, List[str]]


class FileScanner:
    """Expands files and folders into (file, directory parts) pairs."""

    def scan_folder(self, folder: Path, pattern: str = "*") -> List[Path]:
        """Recursively find files in a folder matching the pattern.

        Args:
            folder: Path to the folder to scan
            pattern: Glob pattern to match file names against

        Returns:
            Sorted list of file paths found
        """
        if not folder.exists():
            logger.error(f"Folder does not exist: {folder}")
            return []

        try:
            return sorted(p for p in folder.rglob(pattern) if p.is_file())
        except OSError as e:
            logger.error(f"Error scanning folder {folder}: {e}")
            return []

    def get_relative_parts(self, file_path: Path, base_path: Path) -> List[str]:
        """Get the directory segments between a base folder and a file.

        Args:
            file_path: Path to the file
            base_path: Folder the file was found in

        Returns:
            Directory names from base_path down to the file's parent
        """
        try:
            return list(file_path.relative_to(base_path).parent.parts)
        except ValueError:
            logger.error(f"File {file_path} is not relative to {base_path}")
            return []

    def collect(self, paths: Iterable[Path], pattern: str = "*") -> List[SelectedFile]:
        """Expand selected paths into files with their logical directory parts.

        A plain file is uploaded under its own name. A folder keeps its name
        as the first directory segment of every file found in it.

        Args:
            paths: Files and folders chosen by the user
            pattern: Glob pattern applied inside folders

        Returns:
            List of (file path, directory parts)
        """
        selected: List[SelectedFile] = []
        for path in map(Path, paths):
            if path.is_file():
                selected.append((path, []))
            elif path.is_dir():
                root = path.resolve()
                for file_path in self.scan_folder(root, pattern):
                    selected.append((file_path, [root.name, *self.get_relative_parts(file_path, root)]))
            else:
                logger.error(f"Skipping {path}: not a file or folder")
        return selected
