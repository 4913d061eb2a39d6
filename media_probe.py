import os
import json
import shutil
import subprocess
import logging
logger = logging.getLogger(__name__)

from dataclasses import dataclass, field
from enum import Enum
from dotenv import load_dotenv
load_dotenv()



AUDIO_LIST_SEPARATOR = ', '


class ProbeErrorKind(Enum):
    UNKNOWN = 'unknown'
    NON_ZERO_EXIT = 'non_zero_exit'
    NO_STREAMS = 'no_streams'
    NO_VIDEO_STREAM = 'no_video_stream'
    NO_AUDIO_STREAM = 'no_audio_stream'


class ProbeError(Exception):
    def __init__(self, kind: ProbeErrorKind, message: str = ''):
        super().__init__(f'{kind.value}: {message}' if message else kind.value)
        self.kind = kind
        self.message = message


@dataclass
class ProbeResult:
    resolution: str = None
    video_codec: str = None
    audio_track_count: int = 0
    audio_channels: list[int] = field(default_factory=list)
    audio_layouts: list[str] = field(default_factory=list)
    audio_languages: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def duration(self) -> str:
        return convert_duration(self.duration_seconds)

    def joined(self, values: list) -> str:
        return AUDIO_LIST_SEPARATOR.join(str(v) for v in values)



def ffprobe_path():
    configured = os.getenv('FFPROBE_PATH')
    if configured:
        return configured
    return shutil.which('ffprobe')


def convert_duration(duration) -> str:
    # seconds to h:mm:ss
    duration = duration or 0
    hours = int(duration // 3600)
    minutes = int((duration % 3600) // 60)
    seconds = int(duration % 60)
    return f'{hours}:{minutes:02}:{seconds:02}'


def norm_resolution(width: int, height: int):
    if not (width and height):
        return
    # Handle Standard and Cinematic 2.39:1 resolutions
    if height > 2160:
        return f'{height}p'
    elif 1600 <= height:
        return '4K'
    elif 800 <= height:
        return '1080p'
    elif 500 <= height:
        return '720p'
    elif height >= 480:
        return '480p'
    elif height >= 360:
        return '360p'
    elif height >= 240:
        return '240p'
    else:
        return f'{height}p' # Fallback for Unclassified


def parse_probe_output(metadata: dict) -> ProbeResult:
    """
    Build a ProbeResult from ffprobe's JSON (-show_streams -show_format).
    """
    streams = metadata.get('streams') or []
    if not streams:
        raise ProbeError(ProbeErrorKind.NO_STREAMS)

    video_stream = next((s for s in streams if s.get('codec_type') == 'video'), None)
    if not video_stream:
        raise ProbeError(ProbeErrorKind.NO_VIDEO_STREAM)

    audio_streams = [s for s in streams if s.get('codec_type') == 'audio']
    if not audio_streams:
        raise ProbeError(ProbeErrorKind.NO_AUDIO_STREAM)

    duration = metadata.get('format', {}).get('duration') or video_stream.get('duration')
    try:
        duration = float(duration)
    except (TypeError, ValueError):
        logger.debug(f'could not extract duration ({duration})')
        duration = 0.0

    return ProbeResult(
        resolution=norm_resolution(video_stream.get('width'), video_stream.get('height')),
        video_codec=video_stream.get('codec_name'),
        audio_track_count=len(audio_streams),
        audio_channels=[int(s.get('channels') or 0) for s in audio_streams],
        audio_layouts=[s.get('channel_layout') or 'unknown' for s in audio_streams],
        audio_languages=[(s.get('tags') or {}).get('language') or 'und' for s in audio_streams],
        duration_seconds=duration,
    )


def get_video_metadata(video_path: str) -> ProbeResult:
    binary = ffprobe_path()
    if not binary or not os.path.exists(binary):
        logger.error('ffprobe binary not found.')
        raise ProbeError(ProbeErrorKind.UNKNOWN, 'ffprobe binary not found')

    cmd = [
        binary,
        '-v', 'error',
        '-show_entries', 'format=duration',
        '-show_entries', 'stream=codec_type,codec_name,width,height,channels,channel_layout,duration:stream_tags=language',
        '-of', 'json',
        video_path
    ]

    try:
        result = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True, encoding='utf-8', errors='replace')
    except OSError as e:
        raise ProbeError(ProbeErrorKind.UNKNOWN, str(e)) from e

    if result.returncode != 0:
        raise ProbeError(ProbeErrorKind.NON_ZERO_EXIT, f'exit code {result.returncode}: {result.stderr.strip()[:200]}')

    try:
        metadata = json.loads(result.stdout or '{}')
    except json.JSONDecodeError as e:
        raise ProbeError(ProbeErrorKind.UNKNOWN, f'unreadable ffprobe output: {e}') from e

    return parse_probe_output(metadata)
