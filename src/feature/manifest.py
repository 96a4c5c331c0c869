"""Manifest loading and rendering.

A manifest is a source of one or more resource definitions. Three kinds
exist, chosen by file conventions when a path is loaded:

- OVERLAY: the path is (or contains) a kustomization; rendered by running
  the overlay build engine against the directory
- TEMPLATED: the file name contains '.tmpl'; rendered with Jinja2 against
  the feature's data bag
- RAW: anything else; parsed once at load time

Every kind renders to the same representation: a list of resource dicts.
Files whose name contains '.patch' are applied as merge patches instead of
being created (see applier.apply_resources).
"""

import copy
import logging
import re
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

import jinja2
import yaml

from common import run_command
from config import EngineSettings, get_settings
from feature.errors import ManifestError

logger = logging.getLogger(__name__)

TEMPLATE_MARKER = '.tmpl'
PATCH_MARKER = '.patch'
OVERLAY_MARKERS = ('kustomization.yaml', 'kustomization.yml', 'Kustomization')

DOCUMENT_SEPARATOR = re.compile(r'^---[ \t]*\r?$', re.MULTILINE)

# Kinds that never carry metadata.namespace
CLUSTER_SCOPED_KINDS = frozenset({
    'Namespace',
    'CustomResourceDefinition',
    'ClusterRole',
    'ClusterRoleBinding',
    'PersistentVolume',
    'StorageClass',
    'PriorityClass',
    'MutatingWebhookConfiguration',
    'ValidatingWebhookConfiguration',
    'APIService',
    'FeatureTracker',
})

# A plugin mutates one rendered resource in place
Plugin = Callable[[dict], None]


class ManifestKind(Enum):
    RAW = 'raw'
    TEMPLATED = 'templated'
    OVERLAY = 'overlay'


def replace_char(value: str, old: str, new: str) -> str:
    """Template helper: replace every occurrence of old in value with new."""
    return str(value).replace(old, new)


_template_env = jinja2.Environment(
    undefined=jinja2.StrictUndefined,
    keep_trailing_newline=True,
)
_template_env.filters['replace_char'] = replace_char
_template_env.globals['replace_char'] = replace_char


@dataclass
class Manifest:
    """One loaded manifest source.

    Attributes:
        kind: Which rendering strategy applies
        name: Base file (or directory) name
        path: Path relative to the manifest location, '/'-separated
        patch: Apply rendered resources as merge patches
        objects: Parsed resources (RAW only)
        template: Compiled template (TEMPLATED only)
        location: Manifest root the path is relative to (OVERLAY only)
        plugins: Transformers applied to overlay output
    """
    kind: ManifestKind
    name: str
    path: str
    patch: bool = False
    objects: list[dict] = field(default_factory=list)
    template: Optional[jinja2.Template] = None
    location: Any = None
    plugins: list[Plugin] = field(default_factory=list)


def is_cluster_scoped(obj: dict) -> bool:
    return obj.get('kind') in CLUSTER_SCOPED_KINDS


def describe(obj: dict) -> str:
    """Short kind/name identifier for log and error messages."""
    name = (obj.get('metadata') or {}).get('name', '<unnamed>')
    return f"{obj.get('kind', '<unknown>')}/{name}"


def ensure_namespaced(objects: list[dict], source: str) -> None:
    """Fail if any namespaced object lacks metadata.namespace.

    Raises:
        ManifestError: Naming the first offending object
    """
    for obj in objects:
        if is_cluster_scoped(obj):
            continue
        if not (obj.get('metadata') or {}).get('namespace'):
            raise ManifestError(f"no namespace is set on {describe(obj)} in {source}")


def parse_documents(content: str, source: str) -> list[dict]:
    """Split multi-document YAML on '---' lines and parse each document.

    Empty documents are skipped. Any parse failure aborts the whole file.

    Raises:
        ManifestError: If a document is not valid YAML or not a mapping
    """
    objects = []
    for index, chunk in enumerate(DOCUMENT_SEPARATOR.split(content)):
        if not chunk.strip():
            continue
        try:
            doc = yaml.safe_load(chunk)
        except yaml.YAMLError as e:
            raise ManifestError(f"failed to parse document {index} of {source}: {e}") from e
        if doc is None:
            continue
        if not isinstance(doc, dict):
            raise ManifestError(
                f"document {index} of {source} is not a resource mapping "
                f"(got {type(doc).__name__})"
            )
        objects.append(doc)
    return objects


def _resolve(location, path: str):
    node = location
    for part in path.replace('\\', '/').split('/'):
        if part and part != '.':
            node = node.joinpath(part)
    return node


def _join(path: str, name: str) -> str:
    return f"{path.rstrip('/')}/{name}" if path else name


def _has_overlay_marker(node) -> bool:
    """True if node is a directory holding a kustomization at or below it."""
    for child in node.iterdir():
        if child.is_file() and child.name in OVERLAY_MARKERS:
            return True
        if child.is_dir() and _has_overlay_marker(child):
            return True
    return False


def _parent_path(path: str) -> str:
    parts = [p for p in path.replace('\\', '/').split('/') if p]
    return '/'.join(parts[:-1])


def _load_file(node, path: str) -> Manifest:
    name = node.name
    patch = PATCH_MARKER in name
    try:
        content = node.read_text(encoding='utf-8')
    except (OSError, UnicodeDecodeError) as e:
        raise ManifestError(f"failed to read manifest {path}: {e}") from e

    if TEMPLATE_MARKER in name:
        try:
            template = _template_env.from_string(content)
        except jinja2.TemplateSyntaxError as e:
            raise ManifestError(f"invalid template {path} (line {e.lineno}): {e.message}") from e
        return Manifest(kind=ManifestKind.TEMPLATED, name=name, path=path, patch=patch, template=template)

    objects = parse_documents(content, path)
    ensure_namespaced(objects, path)
    return Manifest(kind=ManifestKind.RAW, name=name, path=path, patch=patch, objects=objects)


def _walk(node, path: str, manifests: list[Manifest]) -> None:
    for child in sorted(node.iterdir(), key=lambda c: c.name):
        child_path = _join(path, child.name)
        if child.is_dir():
            _walk(child, child_path, manifests)
        elif child.is_file():
            manifests.append(_load_file(child, child_path))


def load_manifests(location, path: str, plugins: Optional[list[Plugin]] = None) -> list[Manifest]:
    """Load every manifest found at path within location.

    Args:
        location: Manifest root (pathlib.Path or importlib.resources Traversable)
        path: File or directory relative to location
        plugins: Transformers attached to overlay manifests

    Returns:
        Manifests in deterministic (sorted walk) order

    Raises:
        ManifestError: If the path does not exist or a manifest is invalid
    """
    node = _resolve(location, path)
    if not (node.is_file() or node.is_dir()):
        raise ManifestError(f"manifest path {path} not found")

    if node.is_file():
        if node.name in OVERLAY_MARKERS:
            overlay_path = _parent_path(path)
            return [Manifest(
                kind=ManifestKind.OVERLAY,
                name=overlay_path.rsplit('/', 1)[-1] or node.name,
                path=overlay_path,
                location=location,
                plugins=list(plugins or []),
            )]
        return [_load_file(node, path)]

    if _has_overlay_marker(node):
        return [Manifest(
            kind=ManifestKind.OVERLAY,
            name=node.name,
            path=path,
            location=location,
            plugins=list(plugins or []),
        )]

    manifests: list[Manifest] = []
    _walk(node, path, manifests)
    logger.debug(f"Loaded {len(manifests)} manifest(s) from {path}")
    return manifests


def _build_overlay(directory: Path, source: str, settings: EngineSettings) -> str:
    rc, out, err = run_command(
        [settings.kustomize_bin, 'build', str(directory)],
        timeout=settings.kustomize_timeout,
    )
    if rc != 0:
        raise ManifestError(f"overlay build failed for {source}: {err.strip() or f'exit code {rc}'}")
    return out


def _copy_tree(node, dest: Path) -> None:
    """Copy a Traversable directory onto the real filesystem."""
    for child in node.iterdir():
        target = dest / child.name
        if child.is_dir():
            target.mkdir()
            _copy_tree(child, target)
        elif child.is_file():
            target.write_bytes(child.read_bytes())


def _render_overlay(manifest: Manifest, settings: EngineSettings) -> list[dict]:
    node = _resolve(manifest.location, manifest.path)
    if isinstance(node, Path):
        output = _build_overlay(node, manifest.path, settings)
    else:
        # The build engine needs a real directory; packaged or zipped trees are extracted first
        with tempfile.TemporaryDirectory(prefix='overlay-') as tmp:
            directory = Path(tmp) / (node.name or 'overlay')
            directory.mkdir()
            try:
                _copy_tree(node, directory)
            except OSError as e:
                raise ManifestError(f"failed to extract overlay {manifest.path}: {e}") from e
            output = _build_overlay(directory, manifest.path, settings)

    objects = parse_documents(output, manifest.path)
    for obj in objects:
        for plugin in manifest.plugins:
            plugin(obj)
    return objects


def render(manifest: Manifest, data: dict[str, Any], settings: Optional[EngineSettings] = None) -> list[dict]:
    """Render a manifest into resource dicts.

    Returned objects are fresh copies; callers may mutate them freely.

    Raises:
        ManifestError: On template errors, overlay build failures, parse
            failures or namespaced objects without a namespace
    """
    if manifest.kind is ManifestKind.RAW:
        return copy.deepcopy(manifest.objects)

    if manifest.kind is ManifestKind.TEMPLATED:
        if manifest.template is None:
            raise ManifestError(f"template {manifest.path} was not compiled")
        try:
            content = manifest.template.render(data)
        except jinja2.TemplateError as e:
            raise ManifestError(f"failed to render template {manifest.path}: {e}") from e
        objects = parse_documents(content, manifest.path)
        ensure_namespaced(objects, manifest.path)
        return objects

    if manifest.kind is ManifestKind.OVERLAY:
        objects = _render_overlay(manifest, settings or get_settings())
        ensure_namespaced(objects, manifest.path)
        return objects

    raise ManifestError(f"unsupported manifest kind {manifest.kind}")
