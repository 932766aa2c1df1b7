"""
Function Tree for the RPC Dispatch Engine

This module defines the nested name -> function structure that describes the
exposed API surface, together with the helpers that flatten it into endpoint
paths and project it into a wire-safe interface description.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Mapping, Sequence, Tuple, Union

logger = logging.getLogger(__name__)

ENDPOINT_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z_0-9]*$")

CALL_ROUTE_PREFIX = "/call"

FUNCTION_MARKER = "function"
VALUE_MARKER = "value"


class InvalidEndpointNameError(ValueError):
    """Exception raised when a path cannot be used to register a leaf."""
    pass


@dataclass(frozen=True)
class EndpointPath:
    """
    Ordered name segments locating one leaf in a FunctionTree.

    Attributes:
        segments: Names from the root of the tree down to the leaf
    """
    segments: Tuple[str, ...]

    @classmethod
    def parse(cls, path: Union[str, Sequence[str], "EndpointPath"]) -> "EndpointPath":
        """
        Build an EndpointPath from a dotted string or a sequence of names.

        Args:
            path: "math.add", ["math", "add"] or an existing EndpointPath

        Returns:
            EndpointPath instance
        """
        if isinstance(path, EndpointPath):
            return path
        if isinstance(path, str):
            segments = tuple(path.split(".")) if path else ()
        else:
            segments = tuple(path)
        return cls(segments)

    @property
    def dotted(self) -> str:
        return ".".join(self.segments)

    @property
    def display_name(self) -> str:
        """Name used in error envelopes, e.g. ``math.add()``."""
        return self.dotted + "()"

    @property
    def route(self) -> str:
        """HTTP route this endpoint is served on."""
        return CALL_ROUTE_PREFIX + "/" + "/".join(self.segments)

    def is_valid(self) -> bool:
        """Check every segment against the endpoint name grammar."""
        return bool(self.segments) and all(is_valid_endpoint_name(name) for name in self.segments)

    def __str__(self) -> str:
        return "/".join(str(name) for name in self.segments)


def is_valid_endpoint_name(name: Any) -> bool:
    """Return True if ``name`` may be used as one segment of an endpoint path."""
    return isinstance(name, str) and ENDPOINT_NAME_PATTERN.fullmatch(name) is not None


class FunctionTree:
    """
    Nested mapping from names to functions or further FunctionTrees.

    Trees are built explicitly through ``add`` and ``branch``; plain nested
    dictionaries can be converted with ``from_mapping``. A server snapshots
    the tree when it starts, so later additions are not exposed.

    Example:
        tree = FunctionTree()
        tree.add("math.add", lambda pair: pair[0] + pair[1])
        tree.branch("users").add("get", get_user)
    """

    def __init__(self):
        self._children: Dict[str, Union["FunctionTree", Any]] = {}

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "FunctionTree":
        """
        Create a FunctionTree from a plain nested mapping.

        Keys are kept as given, even when they are not strings; such names
        are reported and skipped when the tree is enumerated.

        Args:
            mapping: name -> callable, constant or nested mapping

        Returns:
            FunctionTree mirroring the mapping
        """
        if isinstance(mapping, FunctionTree):
            return mapping

        tree = cls()
        for name, value in mapping.items():
            if isinstance(value, Mapping):
                tree._children[name] = cls.from_mapping(value)
            else:
                tree._children[name] = value
        return tree

    def add(self, path: Union[str, Sequence[str], EndpointPath], function: Callable[[Any], Any]) -> "FunctionTree":
        """
        Register a leaf under ``path``, creating intermediate branches.

        Names are not validated here; invalid names are reported when the
        tree is enumerated so that the rest of the tree stays usable.

        Args:
            path: Dotted string or sequence of names
            function: Leaf value, normally a callable taking one argument

        Returns:
            The tree, for chaining

        Raises:
            InvalidEndpointNameError: If the path is empty or runs through a leaf
        """
        endpoint = EndpointPath.parse(path)
        if not endpoint.segments:
            raise InvalidEndpointNameError("Cannot register a function at an empty path")

        node = self
        for name in endpoint.segments[:-1]:
            node = node.branch(name)
        node._children[endpoint.segments[-1]] = function
        return self

    def branch(self, name: str) -> "FunctionTree":
        """
        Return the sub-tree stored under ``name``, creating it if missing.

        Raises:
            InvalidEndpointNameError: If ``name`` already holds a leaf
        """
        if name not in self._children:
            self._children[name] = FunctionTree()
        child = self._children[name]
        if not isinstance(child, FunctionTree):
            raise InvalidEndpointNameError(f"'{name}' is already registered as a leaf")
        return child

    def get(self, path: Union[str, Sequence[str], EndpointPath]) -> Any:
        """
        Look up the node stored at ``path``.

        Raises:
            KeyError: If no node exists at that path
        """
        node: Any = self
        for name in EndpointPath.parse(path).segments:
            if not isinstance(node, FunctionTree) or name not in node._children:
                raise KeyError(str(EndpointPath.parse(path)))
            node = node._children[name]
        return node

    def items(self):
        return self._children.items()

    def __contains__(self, name: str) -> bool:
        return name in self._children

    def __len__(self) -> int:
        return len(self._children)

    def __repr__(self) -> str:
        return f"FunctionTree({describe(self)!r})"


def walk_tree(tree: FunctionTree, prefix: Tuple[str, ...] = ()) -> Iterator[Tuple[EndpointPath, Any]]:
    """
    Yield ``(path, leaf)`` for every leaf of the tree, depth first.

    Empty branches yield nothing.
    """
    for name, child in tree.items():
        path = prefix + (name,)
        if isinstance(child, FunctionTree):
            yield from walk_tree(child, path)
        else:
            yield EndpointPath(path), child


def enumerate_endpoints(tree: Union[FunctionTree, Mapping[str, Any]]) -> Iterator[EndpointPath]:
    """
    Yield the path of every leaf whose names satisfy the endpoint grammar.

    Paths with an invalid segment are skipped with a warning. Every call walks
    the tree again, so the result reflects the tree's current state.

    Args:
        tree: FunctionTree or plain nested mapping

    Yields:
        EndpointPath for each valid leaf
    """
    tree = FunctionTree.from_mapping(tree)
    for endpoint, _ in walk_tree(tree):
        bad_name = next((name for name in endpoint.segments if not is_valid_endpoint_name(name)), None)
        if bad_name is not None:
            logger.warning(
                f"The endpoint '{endpoint}' will be ignored. This is because '{bad_name}' "
                f"contains characters other than the [a-zA-Z_][a-zA-Z_0-9] requirement."
            )
            continue
        yield endpoint


def describe(tree: Union[FunctionTree, Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Project the tree into a JSON-friendly description of its shape.

    Callable leaves become ``"function"`` and other leaves ``"value"``, so no
    code references leave the server.

    Args:
        tree: FunctionTree or plain nested mapping

    Returns:
        Nested dictionary mirroring the tree's names
    """
    tree = FunctionTree.from_mapping(tree)
    description = {}
    for name, child in tree.items():
        # JSON object keys must be strings
        key = name if isinstance(name, str) else str(name)
        if isinstance(child, FunctionTree):
            description[key] = describe(child)
        elif callable(child):
            description[key] = FUNCTION_MARKER
        else:
            description[key] = VALUE_MARKER
    return description
