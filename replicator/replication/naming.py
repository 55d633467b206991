"""
Namespace naming for configured source directories.

Each source gets a directory under the destination root named after its
last path component. Names are only unique within one run's configured
sources: the caller threads a per-run ``seen_names`` set through every call.
"""

from typing import Iterable, List, Set, Tuple


def _path_components(source_path: str) -> List[str]:
    components = [part for part in source_path.split('/') if part and part != '.']
    return components or ['root']


def resolve_namespace(source_path: str, seen_names: Set[str]) -> str:
    """
    Resolve the namespace name for a source directory.

    Uses the last path component. On a clash with a name already seen in this
    run, the parent directory name is prefixed (``parent_name``); further
    clashes keep prefixing ancestors, and a numeric suffix is the last resort.

    Args:
        source_path: Source directory path
        seen_names: Names already assigned in this run (updated in place)

    Returns:
        Namespace name, distinct from every name in seen_names
    """
    components = _path_components(source_path)

    name = components[-1]
    depth = 1
    while name in seen_names and depth < len(components):
        depth += 1
        name = '_'.join(components[-depth:])

    if name in seen_names:
        base = name
        counter = 2
        while f"{base}_{counter}" in seen_names:
            counter += 1
        name = f"{base}_{counter}"

    seen_names.add(name)
    return name


def resolve_namespaces(source_paths: Iterable[str]) -> List[Tuple[str, str]]:
    """
    Resolve namespaces for all sources of one run, in configuration order.

    Returns:
        List of (source_path, namespace) tuples
    """
    seen_names: Set[str] = set()
    return [(path, resolve_namespace(path, seen_names)) for path in source_paths]
