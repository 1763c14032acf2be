"""
Tests for the local blob store and configuration loading.
"""

import pytest
import yaml

from assetflow.config import (
    get_config_value, get_default_config, load_config, save_config, update_config_value
)
from assetflow.storage import (
    LocalBlobStore, StorageNotFoundError, StoragePermissionError, create_blob_store
)

BUCKET = 'assets'


class TestLocalBlobStore:
    """Test local filesystem storage operations."""

    def test_put_get_head(self, store):
        info = store.put(BUCKET, 'a/b/c.jpg', b'data', 'image/jpeg')
        assert info.size == 4
        assert store.exists(BUCKET, 'a/b/c.jpg')
        assert store.get(BUCKET, 'a/b/c.jpg') == b'data'
        head = store.head(BUCKET, 'a/b/c.jpg')
        assert head.size == 4
        assert head.content_type == 'image/jpeg'

    def test_missing_object(self, store):
        assert not store.exists(BUCKET, 'nope.jpg')
        with pytest.raises(StorageNotFoundError):
            store.get(BUCKET, 'nope.jpg')
        with pytest.raises(StorageNotFoundError):
            store.head(BUCKET, 'nope.jpg')
        assert store.delete(BUCKET, 'nope.jpg') is False

    def test_list_with_prefix(self, store):
        store.put(BUCKET, 'temp/uploads/s1/a.jpg', b'1')
        store.put(BUCKET, 'temp/uploads/s1/b.jpg', b'2')
        store.put(BUCKET, 'tenants/acme/x.jpg', b'3')
        assert store.list(BUCKET, 'temp/') == ['temp/uploads/s1/a.jpg', 'temp/uploads/s1/b.jpg']
        assert store.list('empty-bucket') == []

    def test_move(self, store):
        store.put(BUCKET, 'temp/a.jpg', b'payload')
        info = store.move(BUCKET, 'temp/a.jpg', 'tenants/acme/a.jpg')
        assert info.key == 'tenants/acme/a.jpg'
        assert not store.exists(BUCKET, 'temp/a.jpg')
        assert store.get(BUCKET, 'tenants/acme/a.jpg') == b'payload'

    def test_move_missing_source_keeps_nothing(self, store):
        with pytest.raises(StorageNotFoundError):
            store.move(BUCKET, 'temp/missing.jpg', 'tenants/acme/missing.jpg')
        assert not store.exists(BUCKET, 'tenants/acme/missing.jpg')

    def test_path_traversal_rejected(self, store):
        with pytest.raises(StoragePermissionError):
            store.put(BUCKET, '../../escape.txt', b'x')

    def test_factory(self, tmp_path):
        store = create_blob_store({'type': 'local', 'base_path': str(tmp_path)})
        assert isinstance(store, LocalBlobStore)
        with pytest.raises(ValueError):
            create_blob_store({'type': 'ftp'})


class TestConfig:
    """Test YAML configuration layering and helpers."""

    def test_defaults(self):
        config = get_default_config()
        assert config['pipeline']['verification']['min_bytes'] == 256
        assert config['color_analysis']['k'] == 6
        assert config['thumbnails']['styles']['medium'] == 1024

    def test_env_expansion(self, tmp_path, monkeypatch):
        monkeypatch.setenv('ASSETFLOW_TEST_BUCKET', 'media')
        monkeypatch.delenv('ASSETFLOW_UNSET_VAR', raising=False)
        path = tmp_path / 'config.yaml'
        path.write_text(yaml.safe_dump({
            'storage': {
                'bucket': '${ASSETFLOW_TEST_BUCKET}',
                'base_path': '${ASSETFLOW_UNSET_VAR:-/srv/assets}',
                'region': '${ASSETFLOW_UNSET_VAR}',
            },
        }))
        config = load_config(path)
        assert config['storage']['bucket'] == 'media'
        assert config['storage']['base_path'] == '/srv/assets'
        assert config['storage']['region'] == '${ASSETFLOW_UNSET_VAR}'
        # untouched sections fall back to defaults
        assert config['color_analysis']['k'] == 6

    def test_partial_override_keeps_siblings(self, tmp_path):
        path = tmp_path / 'config.yaml'
        path.write_text(yaml.safe_dump({'pipeline': {'max_deferrals': 9}}))
        config = load_config(path)
        assert config['pipeline']['max_deferrals'] == 9
        assert config['pipeline']['defer_delay'] == 60

    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_config(tmp_path / 'absent.yaml')
        assert config['escalation']['ticket_failure_threshold'] == 3

    def test_packaged_config_loads(self, monkeypatch):
        monkeypatch.delenv('DATABASE_URL', raising=False)
        config = load_config()
        assert config['database']['url'] == 'sqlite:///assetflow.db'
        assert config['pipeline']['stages']['generate_thumbnails']['timeout'] == 300

    def test_save_roundtrip(self, tmp_path):
        path = tmp_path / 'saved.yaml'
        assert save_config({'ai': {'enabled': True}}, path)
        assert load_config(path)['ai']['enabled'] is True

    def test_dotted_access(self):
        config = get_default_config()
        assert get_config_value(config, 'pipeline.verification.min_bytes') == 256
        assert get_config_value(config, 'pipeline.nope.deeper', 'fallback') == 'fallback'
        update_config_value(config, 'pipeline.stages.promote.max_attempts', 5)
        assert config['pipeline']['stages']['promote']['max_attempts'] == 5
