#!/usr/bin/env python3
"""Tests for feature/manifest.py - manifest loading and rendering.

Tests verify:
1. Kind classification (raw, templated, overlay) by file conventions
2. Multi-document parsing and namespace validation
3. Template rendering against feature data, including replace_char
4. Overlay rendering through the build engine with plugins applied
5. Error reporting for missing paths and malformed content
6. Manifests and overlays served from a zip archive
"""

import sys
import zipfile
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from config import EngineSettings
from feature.errors import ManifestError
from feature.manifest import (
    ManifestKind,
    ensure_namespaced,
    load_manifests,
    parse_documents,
    render,
    replace_char,
)
from feature.plugins import namespace_applier

OVERLAY_OUTPUT = """apiVersion: v1
kind: ConfigMap
metadata:
  name: my-configmap
data:
  key: value
---
apiVersion: v1
kind: Namespace
metadata:
  name: extra
"""


class TestParseDocuments:
    """Test multi-document YAML parsing."""

    def test_splits_on_separator_lines(self):
        content = "a: 1\n---\nb: 2\n--- \nc: 3\n"
        assert parse_documents(content, 'x.yaml') == [{'a': 1}, {'b': 2}, {'c': 3}]

    def test_skips_empty_documents(self):
        content = "---\na: 1\n---\n\n---\n# only a comment\n"
        assert parse_documents(content, 'x.yaml') == [{'a': 1}]

    def test_separator_inside_value_is_not_split(self):
        assert parse_documents("a: x---y\n", 'x.yaml') == [{'a': 'x---y'}]

    def test_invalid_yaml(self):
        with pytest.raises(ManifestError, match='failed to parse document 1 of bad.yaml'):
            parse_documents("a: 1\n---\nb: [unclosed\n", 'bad.yaml')

    def test_non_mapping_document(self):
        with pytest.raises(ManifestError, match='not a resource mapping'):
            parse_documents("- a\n- b\n", 'list.yaml')

    def test_crlf_line_endings(self):
        content = (
            "apiVersion: v1\r\nkind: ConfigMap\r\nmetadata:\r\n  name: a\r\n"
            "---\r\n"
            "apiVersion: v1\r\nkind: ConfigMap\r\nmetadata:\r\n  name: b\r\n"
        )
        objects = parse_documents(content, 'crlf.yaml')
        assert [o['metadata']['name'] for o in objects] == ['a', 'b']


class TestEnsureNamespaced:
    def test_cluster_scoped_kinds_need_no_namespace(self):
        ensure_namespaced([{'kind': 'Namespace', 'metadata': {'name': 'ns'}}], 'ns.yaml')

    def test_missing_namespace_names_the_object(self):
        obj = {'kind': 'ConfigMap', 'metadata': {'name': 'cm'}}
        with pytest.raises(ManifestError, match='no namespace is set on ConfigMap/cm in cm.yaml'):
            ensure_namespaced([obj], 'cm.yaml')


class TestLoadManifests:
    """Test manifest discovery and classification."""

    def test_raw_file(self, manifests_dir):
        manifests = load_manifests(manifests_dir, 'raw/configmap.yaml')
        assert len(manifests) == 1
        manifest = manifests[0]
        assert manifest.kind is ManifestKind.RAW
        assert manifest.path == 'raw/configmap.yaml'
        assert [o['metadata']['name'] for o in manifest.objects] == ['first', 'second']
        assert manifest.patch is False

    def test_directory_walk_is_sorted(self, manifests_dir):
        manifests = load_manifests(manifests_dir, 'raw')
        assert [m.name for m in manifests] == ['configmap.yaml', 'namespace.yaml']
        assert all(m.kind is ManifestKind.RAW for m in manifests)

    def test_templated_file(self, manifests_dir):
        manifests = load_manifests(manifests_dir, 'templated')
        assert len(manifests) == 1
        assert manifests[0].kind is ManifestKind.TEMPLATED
        assert manifests[0].template is not None
        assert manifests[0].objects == []

    def test_patch_file(self, manifests_dir):
        manifest = load_manifests(manifests_dir, 'patches/deployment.patch.yaml')[0]
        assert manifest.kind is ManifestKind.RAW
        assert manifest.patch is True

    def test_overlay_directory(self, manifests_dir):
        """A directory holding a kustomization is a single overlay manifest."""
        plugin = namespace_applier('target')
        manifests = load_manifests(manifests_dir, 'overlay', plugins=[plugin])
        assert len(manifests) == 1
        assert manifests[0].kind is ManifestKind.OVERLAY
        assert manifests[0].path == 'overlay'
        assert manifests[0].plugins == [plugin]

    def test_overlay_marker_file_uses_its_directory(self, manifests_dir):
        manifests = load_manifests(manifests_dir, 'overlay/kustomization.yaml')
        assert len(manifests) == 1
        assert manifests[0].kind is ManifestKind.OVERLAY
        assert manifests[0].path == 'overlay'

    def test_plain_file_next_to_marker_is_raw_candidate(self, manifests_dir):
        """Only the marker file itself turns a file path into an overlay."""
        with pytest.raises(ManifestError, match='no namespace is set on ConfigMap/my-configmap'):
            load_manifests(manifests_dir, 'overlay/resource.yaml')

    def test_marker_below_directory_makes_it_an_overlay(self, manifests_dir):
        manifests = load_manifests(manifests_dir, '.')
        assert [m.kind for m in manifests] == [ManifestKind.OVERLAY]

    def test_missing_path(self, manifests_dir):
        with pytest.raises(ManifestError, match='manifest path nope not found'):
            load_manifests(manifests_dir, 'nope')

    def test_raw_without_namespace_fails_at_load(self, tmp_path):
        (tmp_path / 'cm.yaml').write_text("apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: cm\n")
        with pytest.raises(ManifestError, match='no namespace is set on ConfigMap/cm'):
            load_manifests(tmp_path, 'cm.yaml')

    def test_invalid_template_fails_at_load(self, tmp_path):
        (tmp_path / 'bad.tmpl.yaml').write_text("metadata:\n  name: {{ unclosed\n")
        with pytest.raises(ManifestError, match='invalid template bad.tmpl.yaml'):
            load_manifests(tmp_path, 'bad.tmpl.yaml')


class TestRender:
    """Test rendering manifests into resources."""

    def test_raw_returns_copies(self, manifests_dir):
        manifest = load_manifests(manifests_dir, 'raw/configmap.yaml')[0]
        first = render(manifest, {})
        first[0]['metadata']['name'] = 'mutated'
        assert render(manifest, {})[0]['metadata']['name'] == 'first'

    def test_template_renders_against_data(self, manifests_dir):
        manifest = load_manifests(manifests_dir, 'templated/service.tmpl.yaml')[0]
        objects = render(manifest, {'Namespace': 'svc-ns', 'Domain': 'apps.example.com'})
        assert len(objects) == 1
        service = objects[0]
        assert service['kind'] == 'Service'
        assert service['metadata']['name'] == 'knative-local-gateway'
        assert service['metadata']['namespace'] == 'svc-ns'
        assert service['metadata']['labels']['domain'] == 'apps-example-com'

    def test_template_missing_data(self, manifests_dir):
        manifest = load_manifests(manifests_dir, 'templated/service.tmpl.yaml')[0]
        with pytest.raises(ManifestError, match='failed to render template'):
            render(manifest, {'Namespace': 'svc-ns'})

    def test_template_data_may_hold_any_key(self, tmp_path):
        (tmp_path / 'cm.tmpl.yaml').write_text(
            "apiVersion: v1\nkind: ConfigMap\nmetadata:\n"
            "  name: cm\n  namespace: {{ Namespace }}\ndata:\n  domain: {{ Domain }}\n"
        )
        manifest = load_manifests(tmp_path, 'cm.tmpl.yaml')[0]
        objects = render(manifest, {'self': 'x', 'Namespace': 'svc-ns', 'Domain': 'a.b'})
        assert objects[0]['data'] == {'domain': 'a.b'}

    def test_template_rendering_to_unnamespaced_object(self, tmp_path):
        (tmp_path / 'cm.tmpl.yaml').write_text(
            "apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: {{ Name }}\n"
        )
        manifest = load_manifests(tmp_path, 'cm.tmpl.yaml')[0]
        with pytest.raises(ManifestError, match='no namespace is set on ConfigMap/cm'):
            render(manifest, {'Name': 'cm'})

    def test_overlay_runs_build_and_plugins(self, manifests_dir):
        settings = EngineSettings(kustomize_bin='/usr/local/bin/kustomize')
        manifest = load_manifests(manifests_dir, 'overlay', plugins=[namespace_applier('target-ns')])[0]

        with patch('feature.manifest.run_command', return_value=(0, OVERLAY_OUTPUT, '')) as mock_run:
            objects = render(manifest, {}, settings)

        cmd = mock_run.call_args.args[0]
        assert cmd == ['/usr/local/bin/kustomize', 'build', str(manifests_dir / 'overlay')]
        assert objects[0]['metadata']['namespace'] == 'target-ns'
        assert 'namespace' not in objects[1]['metadata']

    def test_overlay_build_failure(self, manifests_dir):
        manifest = load_manifests(manifests_dir, 'overlay')[0]
        with patch('feature.manifest.run_command', return_value=(1, '', 'accumulating resources: boom')):
            with pytest.raises(ManifestError, match='overlay build failed for overlay: accumulating'):
                render(manifest, {}, EngineSettings())

    def test_overlay_output_must_be_namespaced(self, manifests_dir):
        manifest = load_manifests(manifests_dir, 'overlay')[0]
        with patch('feature.manifest.run_command', return_value=(0, OVERLAY_OUTPUT, '')):
            with pytest.raises(ManifestError, match='no namespace is set on ConfigMap/my-configmap'):
                render(manifest, {}, EngineSettings())


class TestArchiveLocation:
    """Test manifests served from a zip archive instead of a directory."""

    @pytest.fixture
    def archive(self, tmp_path):
        zip_path = tmp_path / 'manifests.zip'
        with zipfile.ZipFile(zip_path, 'w') as zf:
            zf.writestr('pkg/raw/cm.yaml',
                        "apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: cm\n  namespace: ns\n")
            zf.writestr('pkg/overlay/kustomization.yaml', "resources:\n- resource.yaml\n")
            zf.writestr('pkg/overlay/base/resource.yaml',
                        "apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: my-configmap\n")
        return zipfile.Path(zip_path, 'pkg/')

    def test_raw_manifest(self, archive):
        manifests = load_manifests(archive, 'raw/cm.yaml')
        assert manifests[0].kind is ManifestKind.RAW
        assert render(manifests[0], {})[0]['metadata']['name'] == 'cm'

    def test_nested_directory_walk(self, archive):
        manifests = load_manifests(archive, 'raw')
        assert [m.path for m in manifests] == ['raw/cm.yaml']

    def test_overlay_is_extracted_for_the_build(self, archive):
        manifest = load_manifests(archive, 'overlay', plugins=[namespace_applier('target-ns')])[0]
        assert manifest.kind is ManifestKind.OVERLAY
        seen = []

        def fake_build(cmd, timeout=None):
            directory = Path(cmd[2])
            seen.append(directory)
            assert (directory / 'kustomization.yaml').read_text() == "resources:\n- resource.yaml\n"
            assert (directory / 'base' / 'resource.yaml').is_file()
            return 0, OVERLAY_OUTPUT, ''

        with patch('feature.manifest.run_command', side_effect=fake_build):
            objects = render(manifest, {}, EngineSettings())

        assert objects[0]['metadata']['namespace'] == 'target-ns'
        assert not seen[0].exists()


class TestReplaceChar:
    def test_replaces_every_occurrence(self):
        assert replace_char('a.b.c', '.', '-') == 'a-b-c'

    def test_no_match(self):
        assert replace_char('abc', '.', '-') == 'abc'
