import os
import pytest

from database_utils import DB, ensure_schema
from media_probe import ProbeError, ProbeErrorKind, ProbeResult
from store import Store, StepResult
from tmdb_client import ProviderError, SeriesDetails, EpisodeDetails, Credit



class FakeProvider:
    """
    In-memory stand-in for TMDBClient. Episodes of a registered series are synthesized
    from its season roster unless registered explicitly.
    """

    def __init__(self):
        self.movies = {}
        self.series = {}
        self.episodes = {}
        self.collections = {}
        self.movie_searches = {}
        self.series_searches = {}
        self.calls = []

    def add_movie(self, movie, title: str = None, year: int = None):
        self.movies[movie.id] = movie
        self.movie_searches[(title or movie.title, year)] = movie.id
        return movie

    def add_series(self, series: SeriesDetails, title: str = None, year: int = None):
        self.series[series.id] = series
        self.series_searches[(title or series.name, year)] = series.id
        return series

    def get_movie(self, movie_id):
        self.calls.append(('get_movie', movie_id))
        if movie_id not in self.movies:
            raise ProviderError(f'not found: /movie/{movie_id}', status=404)
        return self.movies[movie_id]

    def get_series(self, series_id):
        self.calls.append(('get_series', series_id))
        if series_id not in self.series:
            raise ProviderError(f'not found: /tv/{series_id}', status=404)
        return self.series[series_id]

    def get_episode(self, series_id, season_number, episode_number):
        self.calls.append(('get_episode', series_id, season_number, episode_number))
        key = (series_id, season_number, episode_number)
        if key in self.episodes:
            return self.episodes[key]

        series = self.series.get(series_id)
        if series is None or (season_number, episode_number) not in series.roster():
            raise ProviderError(f'not found: /tv/{series_id}/season/{season_number}/episode/{episode_number}', status=404)
        return EpisodeDetails(
            id=series_id * 10000 + season_number * 100 + episode_number,
            name=f'Episode {episode_number}',
            season_number=season_number,
            episode_number=episode_number,
            vote_average=7.5,
            cast=[Credit(1, 'Lead Actor')],
            guest_stars=[Credit(1000 + episode_number, f'Guest {episode_number}')],
        )

    def get_collection(self, collection_id):
        self.calls.append(('get_collection', collection_id))
        if collection_id not in self.collections:
            raise ProviderError(f'not found: /collection/{collection_id}', status=404)
        return self.collections[collection_id]

    def find_movie(self, title, year=None, tmdb_id=None):
        if tmdb_id:
            return self.get_movie(tmdb_id)
        movie_id = self.movie_searches.get((title, year)) or self.movie_searches.get((title, None))
        return self.get_movie(movie_id) if movie_id else None

    def find_series(self, title, year=None, tmdb_id=None):
        if tmdb_id:
            return self.get_series(tmdb_id)
        series_id = self.series_searches.get((title, year)) or self.series_searches.get((title, None))
        return self.get_series(series_id) if series_id else None


class FakeProber:
    def __init__(self, broken=()):
        self.broken = set(broken)
        self.probed = []

    def __call__(self, path):
        self.probed.append(path)
        if os.path.basename(path) in self.broken:
            raise ProbeError(ProbeErrorKind.NO_VIDEO_STREAM, path)
        return ProbeResult(
            resolution='1080p',
            video_codec='h264',
            audio_track_count=2,
            audio_channels=[6, 2],
            audio_layouts=['5.1(side)', 'stereo'],
            audio_languages=['eng', 'und'],
            duration_seconds=9300.0,
        )



def make_file(path, size: int = 16):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, 'wb') as f:
        f.write(b'\0' * size)
    return path


def make_settings(movies=None, series=None, **overrides):
    settings = {
        'libraries': {
            'movies': {'path': str(movies) if movies else '', 'volume_label': '', 'subfolder': ''},
            'series': {'path': str(series) if series else '', 'volume_label': '', 'subfolder': ''},
        },
        'extensions': ['mkv', 'mp4'],
        'scan_cap': 0,
        'default_extension': 'mkv',
        'language': 'en-US',
    }
    settings.update(overrides)
    return settings


def query(store: Store, sql: str, **params) -> list[list]:
    rows = []
    with store.prepare(sql) as stmt:
        for name, value in params.items():
            stmt.bind(name, value)
        status, values = stmt.step_and_get_row()
        while status is StepResult.ROW:
            rows.append(values)
            status, values = stmt.step_and_get_row()
    return rows



@pytest.fixture(autouse=True)
def no_env_credentials(monkeypatch):
    monkeypatch.delenv('API_KEY', raising=False)
    monkeypatch.delenv('DATABASE_PATH', raising=False)


@pytest.fixture
def store(tmp_path):
    with Store(str(tmp_path / 'catalog.db')) as store:
        ensure_schema(store)
        yield store


@pytest.fixture
def db(store):
    return DB(store)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def prober():
    return FakeProber()
