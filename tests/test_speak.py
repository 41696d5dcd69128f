import httpx
import pytest

from app import Config


AUDIO = b'ID3\x04\x00fake-mp3-frames'


@pytest.mark.usefixtures('provider_env')
class TestSpeakRelay:
    def test_returns_audio(self, client, upstream):
        upstream.return_value = httpx.Response(200, content=AUDIO, headers={'content-type': 'audio/mpeg'})

        resp = client.post('/api/speak', json={'text': 'Dia duit'})

        assert resp.status_code == 200
        assert resp.mimetype == 'audio/mpeg'
        assert resp.data == AUDIO

    def test_reshapes_request(self, client, upstream):
        upstream.return_value = httpx.Response(200, content=AUDIO)

        client.post('/api/speak', json={'text': 'Dia duit'})

        args, kwargs = upstream.call_args
        assert args[0].endswith('/v1/text-to-speech/' + Config.ELEVENLABS_VOICE_ID)
        assert kwargs['headers']['xi-api-key'] == 'test-elevenlabs-key'
        assert kwargs['json'] == {
            'text': 'Dia duit',
            'model_id': 'eleven_flash_v2_5',
            'voice_settings': {'stability': 0.5, 'similarity_boost': 0.75},
        }

    def test_provider_error_detail_is_forwarded(self, client, upstream):
        detail = {'detail': {'status': 'quota_exceeded', 'message': 'This request exceeds your quota.'}}
        upstream.return_value = httpx.Response(401, json=detail)

        resp = client.post('/api/speak', json={'text': 'Dia duit'})

        assert resp.status_code == 500
        assert resp.get_json() == {'error': detail}

    @pytest.mark.parametrize('body', [{}, {'text': ''}, {'text': '   '}])
    def test_text_required(self, client, upstream, body):
        resp = client.post('/api/speak', json=body)

        assert resp.status_code == 400
        upstream.assert_not_called()

    def test_text_too_long(self, client, upstream, monkeypatch):
        monkeypatch.setattr(Config, 'MAX_TTS_CHARS', 5)

        resp = client.post('/api/speak', json={'text': 'Conas atá tú?'})

        assert resp.status_code == 400
        upstream.assert_not_called()

    def test_unexpected_error_is_generic(self, client, upstream):
        upstream.side_effect = RuntimeError('boom')

        resp = client.post('/api/speak', json={'text': 'Dia duit'})

        assert resp.status_code == 500
        assert resp.get_json() == {'error': 'Voice failed'}


def test_missing_api_key(client, upstream, monkeypatch):
    monkeypatch.delenv('ELEVENLABS_API_KEY', raising=False)

    resp = client.post('/api/speak', json={'text': 'Dia duit'})

    assert resp.status_code == 500
    assert 'ELEVENLABS_API_KEY' in resp.get_json()['error']
    upstream.assert_not_called()
