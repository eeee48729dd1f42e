"""Turns a (revision, path) pair into an ordered set of declared objects."""

import logging
from typing import Any

import yaml

from configsync.adapters import SourceAdapter
from configsync.errors import ManifestInvalid
from configsync.state import ManagedObject, ObjectKey, Target

logger = logging.getLogger(__name__)

MANIFEST_EXTENSIONS = (".yaml", ".yml")

# Prerequisites are applied before everything else
KIND_PRIORITY = {
    "Namespace": 0,
    "CustomResourceDefinition": 1,
}
DEFAULT_PRIORITY = 2


class ManifestYAMLLoader(yaml.SafeLoader):
    """SafeLoader that leaves unquoted timestamps as strings, as kubectl does."""


ManifestYAMLLoader.yaml_implicit_resolvers = {
    first: [(tag, regexp) for tag, regexp in resolvers if tag != "tag:yaml.org,2002:timestamp"]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


def is_manifest_file(path: str) -> bool:
    """Check whether a file has a recognized manifest extension."""
    return path.lower().endswith(MANIFEST_EXTENSIONS)


def parse_documents(content: bytes, source_file: str) -> list[dict[str, Any]]:
    """Parse a multi-document YAML file into object manifests.

    ``kind: List`` documents are expanded into their items; empty documents
    are skipped.
    """
    try:
        text = content.decode("utf-8")
        documents = list(yaml.load_all(text, Loader=ManifestYAMLLoader))
    except UnicodeDecodeError as e:
        raise ManifestInvalid(f"{source_file}: not valid UTF-8 ({e})") from e
    except yaml.YAMLError as e:
        raise ManifestInvalid(f"{source_file}: {e}") from e

    manifests = []
    for index, doc in enumerate(documents):
        if doc is None:
            continue
        if not isinstance(doc, dict):
            raise ManifestInvalid(f"{source_file}: document {index} is not a mapping")

        if doc.get("kind") == "List" and isinstance(doc.get("items"), list):
            items = doc["items"]
        else:
            items = [doc]

        for item in items:
            if not isinstance(item, dict):
                raise ManifestInvalid(f"{source_file}: document {index} contains a non-mapping item")
            manifests.append(item)

    return manifests


def order_objects(objects: list[ManagedObject]) -> list[ManagedObject]:
    """Namespaces and CRDs first, then file-then-declaration order."""
    return sorted(objects, key=lambda obj: KIND_PRIORITY.get(obj.kind, DEFAULT_PRIORITY))


class ManifestLoader:
    """Reads and parses the manifests of a target at a revision."""

    def __init__(self, source: SourceAdapter):
        self.source = source

    async def load(self, target: Target, revision: str) -> list[ManagedObject]:
        """Load the ordered candidate objects declared under ``target.path``.

        Raises PathNotFound when the path does not exist at the revision and
        ManifestInvalid on parse errors or duplicate declarations.
        """
        files = await self.source.list_files(revision, target.path)
        manifest_files = [f for f in files if is_manifest_file(f)]
        logger.debug(
            f"{target.key}: {len(manifest_files)} manifest files of {len(files)} under {target.path!r} at {revision}"
        )

        objects: list[ManagedObject] = []
        declared_in: dict[ObjectKey, str] = {}

        for path in manifest_files:
            content = await self.source.read_file(revision, path)

            for manifest in parse_documents(content, path):
                try:
                    obj = ManagedObject.from_manifest(
                        manifest,
                        source_file=path,
                        default_namespace=target.namespace,
                    )
                except ValueError as e:
                    raise ManifestInvalid(f"{path}: {e}") from e

                if obj.key in declared_in:
                    raise ManifestInvalid(
                        f"{obj.key} is declared in both {declared_in[obj.key]} and {path}"
                    )
                declared_in[obj.key] = path
                objects.append(obj)

        return order_objects(objects)
