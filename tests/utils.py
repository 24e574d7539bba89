import importlib
import io

import pytest

pytest.importorskip('fastapi')
from fastapi.testclient import TestClient

from tests.fakes import FakeEngine


def prepare_app(tmp_path, monkeypatch, engine=None):
    """Configure environment and return (APP, app_module, engine)."""
    output_dir = tmp_path / 'outputs'
    monkeypatch.setenv('OUTPUT_BASE', str(output_dir))
    monkeypatch.delenv('API_KEY', raising=False)

    import api.storage as storage
    import api.jobs as jobs

    storage = importlib.reload(storage)
    jobs = importlib.reload(jobs)

    import api.app as app_module

    app_module = importlib.reload(app_module)

    engine = engine or FakeEngine()
    monkeypatch.setattr(app_module, 'create_engine', lambda: engine)

    return app_module.APP, app_module, engine


def get_test_client(app):
    return TestClient(app)


def png_bytes(size=(8, 8)):
    from PIL import Image

    buffer = io.BytesIO()
    Image.new('RGBA', size, (255, 255, 255, 128)).save(buffer, format='PNG')
    return buffer.getvalue()
