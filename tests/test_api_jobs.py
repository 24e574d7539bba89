import warnings

from orchestrator import FAILURE_MESSAGE
from tests.fakes import FakeEngine
from tests.utils import get_test_client, png_bytes, prepare_app

VIDEO = ('clip.mov', b'video-bytes', 'video/quicktime')


def test_index_serves_form(tmp_path, monkeypatch):
    app, _, _ = prepare_app(tmp_path, monkeypatch)

    with get_test_client(app) as client:
        resp = client.get('/')
        assert resp.status_code == 200
        assert 'text/html' in resp.headers['content-type']
        assert 'name="wm_position"' in resp.text


def test_engine_lifecycle_follows_app(tmp_path, monkeypatch):
    app, _, engine = prepare_app(tmp_path, monkeypatch)

    with get_test_client(app) as client:
        assert engine.loaded is True
        resp = client.get('/api/v1/engine')
        assert resp.json() == {'loaded': True, 'busy': False, 'active_job': None}

    assert engine.terminated is True


def test_job_requires_video(tmp_path, monkeypatch):
    app, _, engine = prepare_app(tmp_path, monkeypatch)

    with get_test_client(app) as client, warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter('always')
        resp = client.post('/api/v1/jobs', data={'duration_sec': '60'})
        assert not [w for w in caught if 'HTTP_422' in str(w.message)]
        assert resp.status_code == 422
        assert resp.json()['detail'] == 'Upload a video first.'
    assert engine.calls == []


def test_external_audio_requires_audio_file(tmp_path, monkeypatch):
    app, _, engine = prepare_app(tmp_path, monkeypatch)

    with get_test_client(app) as client:
        resp = client.post(
            '/api/v1/jobs',
            data={'use_external_audio': 'true'},
            files={'video': VIDEO},
        )
        assert resp.status_code == 422
        assert 'audio' in resp.json()['detail']
    assert engine.calls == []


def test_engine_not_ready_returns_503(tmp_path, monkeypatch):
    app, _, _ = prepare_app(tmp_path, monkeypatch, engine=FakeEngine(load_error='ffmpeg binary not found'))

    with get_test_client(app) as client:
        resp = client.post('/api/v1/jobs', files={'video': VIDEO})
        assert resp.status_code == 503


def test_unreadable_watermark_image_rejected(tmp_path, monkeypatch):
    app, _, _ = prepare_app(tmp_path, monkeypatch)

    with get_test_client(app) as client:
        resp = client.post(
            '/api/v1/jobs',
            files={'video': VIDEO, 'wm_image': ('logo.png', b'not an image', 'image/png')},
        )
        assert resp.status_code == 422


def test_job_runs_and_output_downloads(tmp_path, monkeypatch):
    app, _, engine = prepare_app(tmp_path, monkeypatch, engine=FakeEngine(output=b'0123456789'))

    with get_test_client(app) as client:
        resp = client.post(
            '/api/v1/jobs',
            data={
                'use_external_audio': 'true',
                'duration_sec': '90',
                'volume': '150',
                'wm_text': 'ASMR: Rain',
                'wm_position': 'top-left',
            },
            files={
                'video': VIDEO,
                'audio': ('rain.wav', b'audio-bytes', 'audio/wav'),
                'wm_image': ('logo.png', png_bytes(), 'image/png'),
            },
        )
        assert resp.status_code == 202
        job_id = resp.json()['id']

        detail = client.get(f'/api/v1/jobs/{job_id}').json()
        assert detail['status'] == 'succeeded'
        assert detail['progress'] == 100
        assert detail['download_url'] == f'/api/v1/jobs/{job_id}/output'

        download = client.get(detail['download_url'])
        assert download.status_code == 200
        assert download.content == b'0123456789'

        partial = client.get(detail['download_url'], headers={'Range': 'bytes=0-3'})
        assert partial.status_code == 206
        assert partial.content == b'0123'
        assert partial.headers['Content-Range'] == 'bytes 0-3/10'

    args = engine.calls[0]
    assert args[args.index('-t') + 1] == '90'
    assert 'video.mov' in args and 'audio.wav' in args and 'wm.png' in args
    audio_filter = args[args.index('-filter:a') + 1]
    assert audio_filter.startswith('volume=1,')
    graph = args[args.index('-filter_complex') + 1]
    assert "text='ASMR\\: Rain'" in graph
    assert '[2:v]format=rgba' in graph


def test_failed_job_reports_generic_message(tmp_path, monkeypatch):
    app, _, _ = prepare_app(tmp_path, monkeypatch, engine=FakeEngine(returncode=1))

    with get_test_client(app) as client:
        resp = client.post('/api/v1/jobs', files={'video': VIDEO})
        assert resp.status_code == 202
        job_id = resp.json()['id']

        detail = client.get(f'/api/v1/jobs/{job_id}').json()
        assert detail['status'] == 'failed'
        assert detail['message'] == FAILURE_MESSAGE
        assert detail['download_url'] is None

        assert client.get(f'/api/v1/jobs/{job_id}/output').status_code == 404
        assert client.get('/api/v1/engine').json()['busy'] is False


def test_second_submission_rejected_while_busy(tmp_path, monkeypatch):
    app, app_module, engine = prepare_app(tmp_path, monkeypatch)
    running = app_module.jobs.registry.start()

    with get_test_client(app) as client:
        resp = client.post('/api/v1/jobs', files={'video': VIDEO})
        assert resp.status_code == 409
        assert resp.json()['detail']['job'] == running.id
    assert engine.calls == []


def test_unknown_job_is_404(tmp_path, monkeypatch):
    app, _, _ = prepare_app(tmp_path, monkeypatch)

    with get_test_client(app) as client:
        assert client.get('/api/v1/jobs/nope').status_code == 404
        assert client.get('/api/v1/jobs/nope/output').status_code == 404


def test_api_key_required_when_configured(tmp_path, monkeypatch):
    app, app_module, _ = prepare_app(tmp_path, monkeypatch)
    monkeypatch.setattr(app_module, 'API_KEY', 'secret')

    with get_test_client(app) as client:
        assert client.post('/api/v1/jobs', files={'video': VIDEO}).status_code == 401
        resp = client.post('/api/v1/jobs', files={'video': VIDEO}, headers={'X-API-Key': 'secret'})
        assert resp.status_code == 202


def test_socket_sends_job_snapshot(tmp_path, monkeypatch):
    app, _, _ = prepare_app(tmp_path, monkeypatch)

    with get_test_client(app) as client:
        job_id = client.post('/api/v1/jobs', files={'video': VIDEO}).json()['id']

        with client.websocket_connect(f'/ws/jobs/{job_id}') as ws:
            event = ws.receive_json()
            assert event['type'] == 'status'
            assert event['status'] == 'succeeded'
            assert event['job'] == job_id

        with client.websocket_connect('/ws/jobs/unknown') as ws:
            assert ws.receive_json()['type'] == 'error'


def test_form_recovers_from_dropped_socket_and_sends_api_key(tmp_path, monkeypatch):
    app, _, _ = prepare_app(tmp_path, monkeypatch)

    with get_test_client(app) as client:
        html = client.get('/').text

    assert 'socket.onclose' in html and 'socket.onerror' in html
    assert '/api/v1/jobs/${job.id}' in html
    assert 'finally' in html
    assert 'id="api-key"' in html
    assert '"X-API-Key"' in html
    assert 'api_key=' in html


def test_uploads_are_spooled_and_removed(tmp_path, monkeypatch):
    app, app_module, engine = prepare_app(tmp_path, monkeypatch)
    spool = tmp_path / 'spool'
    spool.mkdir()
    monkeypatch.setattr(app_module, 'UPLOAD_TMP_DIR', str(spool))

    with get_test_client(app) as client:
        accepted = client.post('/api/v1/jobs', files={'video': VIDEO})
        assert accepted.status_code == 202
        rejected = client.post(
            '/api/v1/jobs',
            files={'video': VIDEO, 'wm_image': ('logo.png', b'not an image', 'image/png')},
        )
        assert rejected.status_code == 422

    assert engine.calls
    assert list(spool.iterdir()) == []


def test_empty_video_upload_counts_as_missing(tmp_path, monkeypatch):
    app, _, engine = prepare_app(tmp_path, monkeypatch)

    with get_test_client(app) as client:
        resp = client.post('/api/v1/jobs', files={'video': ('clip.mp4', b'', 'video/mp4')})
        assert resp.status_code == 422
        assert resp.json()['detail'] == 'Upload a video first.'
    assert engine.calls == []


def test_output_download_suffix_and_open_ranges(tmp_path, monkeypatch):
    app, _, _ = prepare_app(tmp_path, monkeypatch, engine=FakeEngine(output=b'0123456789'))

    with get_test_client(app) as client:
        job_id = client.post('/api/v1/jobs', files={'video': VIDEO}).json()['id']
        url = f'/api/v1/jobs/{job_id}/output'

        tail = client.get(url, headers={'Range': 'bytes=-4'})
        assert tail.status_code == 206
        assert tail.content == b'6789'
        assert tail.headers['Content-Range'] == 'bytes 6-9/10'

        rest = client.get(url, headers={'Range': 'bytes=7-'})
        assert rest.content == b'789'

        past_end = client.get(url, headers={'Range': 'bytes=8-50'})
        assert past_end.headers['Content-Range'] == 'bytes 8-9/10'

        bogus = client.get(url, headers={'Range': 'bytes=9-2'})
        assert bogus.status_code == 200
        assert bogus.content == b'0123456789'


def test_parse_byte_range(tmp_path, monkeypatch):
    _, app_module, _ = prepare_app(tmp_path, monkeypatch)
    parse = app_module.parse_byte_range

    assert parse('bytes=0-3', 10) == (0, 3)
    assert parse('bytes=-20', 10) == (0, 9)
    assert parse('bytes=-0', 10) is None
    assert parse('bytes=0-1,4-5', 10) is None
    assert parse('items=0-3', 10) is None
    assert parse('bytes=x-3', 10) is None
    assert parse(None, 10) is None
    assert parse('bytes=0-3', 0) is None
