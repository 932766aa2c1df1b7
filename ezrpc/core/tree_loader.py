"""
Loading Function Trees from Python Files

Lets the command line driver serve functions defined in any Python file that
exposes a module-level ``interface`` (a FunctionTree or a nested dict).
"""

import importlib.util
from pathlib import Path
from typing import Mapping, Union

from .function_tree import FunctionTree


class TreeLoadError(Exception):
    """Exception raised when a function tree cannot be loaded."""
    pass


def load_tree_from_file(file_path: Union[str, Path], attribute: str = "interface") -> FunctionTree:
    """
    Load the function tree defined in a Python file.

    Args:
        file_path: Path to the Python file
        attribute: Name of the module attribute holding the tree

    Returns:
        FunctionTree built from the attribute

    Raises:
        TreeLoadError: If the file cannot be imported or holds no tree
    """
    file_path = Path(file_path)
    if not file_path.exists():
        raise TreeLoadError(f"Function file not found: {file_path}")

    try:
        spec = importlib.util.spec_from_file_location(f"ezrpc_user_{file_path.stem}", file_path)
        if spec is None or spec.loader is None:
            raise TreeLoadError(f"Could not load module from {file_path}")

        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
    except TreeLoadError:
        raise
    except Exception as e:
        raise TreeLoadError(f"Error loading functions from {file_path}: {str(e)}") from e

    tree = getattr(module, attribute, None)
    if not isinstance(tree, (FunctionTree, Mapping)):
        raise TreeLoadError(
            f"{file_path} must define '{attribute}' as a FunctionTree or a dict"
        )
    return FunctionTree.from_mapping(tree)
