import os
import base64
import binascii
import json
import logging
from datetime import datetime, timezone
from dotenv import load_dotenv
from flask import Flask, render_template, request, jsonify, Response
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
import httpx

# Load environment variables
load_dotenv()

# ---------- Centralized Config ----------
class Config:
    ENV = os.getenv('ENV', 'development')
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()
    PORT = int(os.getenv('PORT', '3001'))
    VERSION = os.getenv('VERSION', '1.0.0')
    ALLOWED_ORIGINS = [o.strip() for o in (os.getenv('ALLOWED_ORIGINS') or '').split(',') if o.strip()]
    # Base64 audio can run to a few MB
    MAX_CONTENT_LENGTH = int(os.getenv('MAX_CONTENT_LENGTH', str(10 * 1024 * 1024)))
    MAX_TTS_CHARS = int(os.getenv('MAX_TTS_CHARS', '2000'))
    UPSTREAM_TIMEOUT = float(os.getenv('UPSTREAM_TIMEOUT', '60'))

    # Chat (Anthropic Messages API)
    ANTHROPIC_URL = 'https://api.anthropic.com/v1/messages'
    ANTHROPIC_VERSION = '2023-06-01'
    ANTHROPIC_MODEL = os.getenv('ANTHROPIC_MODEL', 'claude-sonnet-4-20250514')
    ANTHROPIC_MAX_TOKENS = int(os.getenv('ANTHROPIC_MAX_TOKENS', '1000'))

    # Voice (ElevenLabs)
    ELEVENLABS_URL = 'https://api.elevenlabs.io/v1/text-to-speech/{voice_id}'
    ELEVENLABS_VOICE_ID = os.getenv('ELEVENLABS_VOICE_ID', '4AgX6Piqqh5KT4pSisZQ')
    ELEVENLABS_MODEL_ID = os.getenv('ELEVENLABS_MODEL_ID', 'eleven_flash_v2_5')
    ELEVENLABS_STABILITY = float(os.getenv('ELEVENLABS_STABILITY', '0.5'))
    ELEVENLABS_SIMILARITY_BOOST = float(os.getenv('ELEVENLABS_SIMILARITY_BOOST', '0.75'))

    # Transcription (Azure Speech): 'fast' or 'short'
    TRANSCRIBE_MODE = os.getenv('TRANSCRIBE_MODE', 'fast').lower()
    TRANSCRIBE_LOCALE = os.getenv('TRANSCRIBE_LOCALE', 'en-IE')
    TRANSCRIBE_CANDIDATE_LOCALES = [
        l.strip() for l in os.getenv('TRANSCRIBE_CANDIDATE_LOCALES', 'en-IE,ga-IE').split(',') if l.strip()
    ]
    FAST_TRANSCRIBE_URL = (
        'https://{region}.api.cognitive.microsoft.com'
        '/speechtotext/transcriptions:transcribe?api-version=2024-11-15'
    )
    SHORT_AUDIO_URL = (
        'https://{region}.stt.speech.microsoft.com'
        '/speech/recognition/conversation/cognitiveservices/v1'
    )
    SHORT_AUDIO_CONTENT_TYPE = os.getenv(
        'SHORT_AUDIO_CONTENT_TYPE', 'audio/wav; codecs=audio/pcm; samplerate=16000'
    )

    # Shared password, compared in the browser only
    ACCESS_PASSWORD = os.getenv('ACCESS_PASSWORD', 'luke123')

app = Flask(__name__, static_folder='static', template_folder='templates')
app.config['MAX_CONTENT_LENGTH'] = Config.MAX_CONTENT_LENGTH

# Logging
logging.basicConfig(level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
                    format='%(asctime)s %(levelname)s %(message)s')
logger = logging.getLogger(__name__)

# CORS policy: the relays are open to any origin unless ALLOWED_ORIGINS narrows it.
CORS(app, resources={r"/api/*": {"origins": Config.ALLOWED_ORIGINS or "*",
                                 "methods": ["POST", "OPTIONS"],
                                 "allow_headers": ["Content-Type"],
                                 "send_wildcard": True}})

# Coach persona sent as the system prompt on every chat turn
SYSTEM_PROMPT = """You are Finbar, a warm, patient and funny Munster Irish (Gaeilge na Mumhan) conversation coach. You help complete beginners learn conversational Irish through natural, friendly dialogue.

DIALECT: Always use Munster Irish, the Kerry/Cork dialect specifically.

YOUR TEACHING APPROACH:
- Introduce only 1-3 new Irish words per response. Never overwhelm.
- Teach through conversation, not lectures.
- Be warm and encouraging. Celebrate small wins.
- Correct gently by modeling the right form.
- Use practical phrases first: greetings, introductions, feelings.

ALWAYS respond with valid JSON:
{
  "message": "Your response weaving in Irish naturally. Use **bold** around Irish words.",
  "message_spoken": "Same message but replace Irish words with phonetic pronunciation for text-to-speech (e.g. replace 'Dia duit' with 'JEE-uh GWITCH')",
  "words": [{"irish": "...", "phonetic": "...", "munster_note": "...", "english": "..."}],
  "suggestions": ["reply 1", "reply 2", "reply 3"]
}

PHONETIC RULES: Capital letters for stressed syllables. Familiar English sounds. For Munster: stress often on 2nd syllable; ao = ee in Kerry Irish.

Start by greeting the user, introducing yourself as Finbar, and teaching Dia duit (hello)."""


class ConfigurationError(Exception):
    """A provider credential is missing from the environment."""


def require_env(*names):
    """Read provider credentials at request time. Raises ConfigurationError if any is unset."""
    values = [os.getenv(name) for name in names]
    missing = [name for name, value in zip(names, values) if not value]
    if missing:
        raise ConfigurationError(f"{' and '.join(missing)} not configured. Set {', '.join(missing)} in your .env.")
    return values[0] if len(values) == 1 else values


def provider_error_payload(resp: httpx.Response):
    """Return the provider's JSON error body, or its raw text when it is not JSON."""
    try:
        return resp.json()
    except ValueError:
        return resp.text


def coach_client_config():
    """Settings the browser needs to build each chat turn."""
    return {
        'model': Config.ANTHROPIC_MODEL,
        'maxTokens': Config.ANTHROPIC_MAX_TOKENS,
        'system': SYSTEM_PROMPT,
        'password': Config.ACCESS_PASSWORD,
    }


# ---------- Transcription backends ----------
def decode_audio(audio: str) -> bytes:
    """Decode base64 audio, tolerating a data URL prefix. Raises ValueError on bad input."""
    if audio.startswith('data:') and ',' in audio:
        audio = audio.split(',', 1)[1]
    try:
        data = base64.b64decode(audio)
    except (binascii.Error, ValueError):
        raise ValueError('Audio is not valid base64.')
    if not data:
        raise ValueError('Audio is empty.')
    return data


def transcribe_fast(audio_bytes: bytes, key: str, region: str):
    """Azure Fast Transcription: multipart upload with language identification.
    Returns (httpx.Response, text, language); text and language are None on provider failure.
    """
    definition = {
        'locales': [Config.TRANSCRIBE_LOCALE],
        'languageIdentification': {
            'candidateLocales': Config.TRANSCRIBE_CANDIDATE_LOCALES,
        },
    }
    resp = httpx.post(
        Config.FAST_TRANSCRIBE_URL.format(region=region),
        headers={'Ocp-Apim-Subscription-Key': key},
        files={'audio': ('recording.m4a', audio_bytes, 'audio/mp4')},
        data={'definition': json.dumps(definition)},
        timeout=Config.UPSTREAM_TIMEOUT,
    )
    if not resp.is_success:
        return resp, None, None
    result = resp.json()
    # { combinedPhrases: [{ text }], phrases: [{ text, locale, confidence }] }
    combined = result.get('combinedPhrases') or [{}]
    phrases = result.get('phrases') or [{}]
    return resp, combined[0].get('text') or '', phrases[0].get('locale') or ''


def transcribe_short(audio_bytes: bytes, key: str, region: str):
    """Azure short-audio recognition: raw audio body, single locale, no language detection."""
    resp = httpx.post(
        Config.SHORT_AUDIO_URL.format(region=region),
        params={'language': Config.TRANSCRIBE_LOCALE},
        headers={
            'Ocp-Apim-Subscription-Key': key,
            'Content-Type': Config.SHORT_AUDIO_CONTENT_TYPE,
            'Accept': 'application/json',
        },
        content=audio_bytes,
        timeout=Config.UPSTREAM_TIMEOUT,
    )
    if not resp.is_success:
        return resp, None, None
    result = resp.json()
    if result.get('RecognitionStatus') != 'Success':
        return resp, '', ''
    text = result.get('DisplayText') or ''
    return resp, text, Config.TRANSCRIBE_LOCALE if text else ''


TRANSCRIBERS = {
    'fast': transcribe_fast,
    'short': transcribe_short,
}


# ---------- Pages ----------
@app.route('/')
def index():
    return render_template('index.html', coach=coach_client_config())

# ---------- Health/Version Endpoints ----------
@app.route('/health', methods=['GET'])
def health():
    return jsonify({ 'status': 'ok', 'time': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z') })

@app.route('/version', methods=['GET'])
def version():
    return jsonify({ 'version': Config.VERSION })

# ---------- Error envelopes ----------
@app.errorhandler(405)
def method_not_allowed(e):
    return jsonify({'error': 'Method not allowed'}), 405

@app.errorhandler(413)
def payload_too_large(e):
    return jsonify({'error': f"Request body too large (max {app.config['MAX_CONTENT_LENGTH']} bytes)"}), 413


# ---------- Relays ----------
@app.route('/api/chat', methods=['POST'])
def chat():
    try:
        api_key = require_env('ANTHROPIC_API_KEY')
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            return jsonify({'error': 'Expected a JSON object body.'}), 400

        resp = httpx.post(
            Config.ANTHROPIC_URL,
            headers={
                'Content-Type': 'application/json',
                'x-api-key': api_key,
                'anthropic-version': Config.ANTHROPIC_VERSION,
            },
            json=payload,
            timeout=Config.UPSTREAM_TIMEOUT,
        )
        if not resp.is_success:
            err = provider_error_payload(resp)
            logger.error(f"Anthropic error {resp.status_code}: {err}")
            return jsonify({'error': err}), 500

        return Response(resp.content, status=resp.status_code,
                        content_type=resp.headers.get('content-type', 'application/json'))

    except HTTPException:
        raise
    except ConfigurationError as e:
        logger.error(f"Chat relay: {e}")
        return jsonify({'error': str(e)}), 500
    except httpx.TimeoutException as e:
        logger.error(f"Timeout in chat endpoint: {e}")
        return jsonify({'error': 'Network timeout contacting Anthropic.'}), 504
    except httpx.ConnectError as e:
        logger.error(f"ConnectError in chat endpoint: {e}")
        return jsonify({'error': 'Cannot reach Anthropic. No internet route or DNS blocked.'}), 503
    except Exception:
        logger.exception('Error in chat endpoint')
        return jsonify({'error': 'Something went wrong'}), 500


@app.route('/api/speak', methods=['POST'])
def speak():
    try:
        api_key = require_env('ELEVENLABS_API_KEY')
        data = request.get_json(silent=True) or {}
        text = (data.get('text') or '').strip() if isinstance(data, dict) else ''
        if not text:
            return jsonify({'error': 'text is required'}), 400
        if len(text) > Config.MAX_TTS_CHARS:
            return jsonify({'error': f'text too long (>{Config.MAX_TTS_CHARS} chars)'}), 400

        resp = httpx.post(
            Config.ELEVENLABS_URL.format(voice_id=Config.ELEVENLABS_VOICE_ID),
            headers={
                'Content-Type': 'application/json',
                'xi-api-key': api_key,
            },
            json={
                'text': text,
                'model_id': Config.ELEVENLABS_MODEL_ID,
                'voice_settings': {
                    'stability': Config.ELEVENLABS_STABILITY,
                    'similarity_boost': Config.ELEVENLABS_SIMILARITY_BOOST,
                },
            },
            timeout=Config.UPSTREAM_TIMEOUT,
        )
        if not resp.is_success:
            err = provider_error_payload(resp)
            logger.error(f"ElevenLabs error: {json.dumps(err, indent=2)}")
            return jsonify({'error': err}), 500

        return Response(resp.content, mimetype='audio/mpeg')

    except HTTPException:
        raise
    except ConfigurationError as e:
        logger.error(f"Speak relay: {e}")
        return jsonify({'error': str(e)}), 500
    except httpx.TimeoutException as e:
        logger.error(f"Timeout in speak endpoint: {e}")
        return jsonify({'error': 'Network timeout contacting ElevenLabs.'}), 504
    except httpx.ConnectError as e:
        logger.error(f"ConnectError in speak endpoint: {e}")
        return jsonify({'error': 'Cannot reach ElevenLabs. No internet route or DNS blocked.'}), 503
    except Exception:
        logger.exception('Error in speak endpoint')
        return jsonify({'error': 'Voice failed'}), 500


@app.route('/api/transcribe', methods=['POST'])
def transcribe():
    try:
        key, region = require_env('AZURE_SPEECH_KEY', 'AZURE_SPEECH_REGION')
        transcriber = TRANSCRIBERS.get(Config.TRANSCRIBE_MODE)
        if transcriber is None:
            raise ConfigurationError(f"Unknown TRANSCRIBE_MODE '{Config.TRANSCRIBE_MODE}'. Use 'fast' or 'short'.")

        data = request.get_json(silent=True) or {}
        audio = data.get('audio') if isinstance(data, dict) else None
        if not audio or not isinstance(audio, str):
            return jsonify({'error': 'No audio data received. Expected JSON with "audio" field.'}), 400
        try:
            audio_bytes = decode_audio(audio)
        except ValueError as e:
            return jsonify({'error': str(e)}), 400
        logger.info(f"[TRANSCRIBE] Received audio: {len(audio_bytes)} bytes ({Config.TRANSCRIBE_MODE})")

        resp, text, language = transcriber(audio_bytes, key, region)
        if text is None:
            logger.error(f"[TRANSCRIBE] Azure API error: {resp.status_code} {resp.text}")
            return jsonify({'error': 'Azure transcription failed: ' + resp.text}), 502

        if text:
            logger.info(f"[TRANSCRIBE] Recognised: {text} (lang: {language})")
        else:
            logger.info('[TRANSCRIBE] No speech recognised')
        return jsonify({'text': text, 'language': language})

    except HTTPException:
        raise
    except ConfigurationError as e:
        logger.error(f"[TRANSCRIBE] {e}")
        return jsonify({'error': str(e)}), 500
    except httpx.TimeoutException as e:
        logger.error(f"[TRANSCRIBE] Timeout: {e}")
        return jsonify({'error': 'Network timeout contacting Azure Speech.'}), 504
    except httpx.ConnectError as e:
        logger.error(f"[TRANSCRIBE] ConnectError: {e}")
        return jsonify({'error': 'Cannot reach Azure Speech. No internet route or DNS blocked.'}), 503
    except Exception:
        logger.exception('[TRANSCRIBE] Server error')
        return jsonify({'error': 'Transcription failed'}), 500


if __name__ == '__main__':
    app.run(host='127.0.0.1', port=Config.PORT, debug=(Config.ENV != 'production'))
