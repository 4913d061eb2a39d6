import os
import json
import threading
import pytest

from database_utils import DB, MediaType
from store import StoreError
from library_manager import (
    parse_name, parse_episode, episode_code, compose_episode_title, sanitize_filename,
    discover_files, resolve_root, build_context, sync_libraries, create_settings, load_settings,
)
from tmdb_client import MovieDetails, SeriesDetails, SeasonSummary, CollectionDetails, Genre, Credit, EpisodeDetails
from conftest import FakeProber, make_file, make_settings



def gladiator():
    return MovieDetails(
        id=98, title='Gladiator', overview='A general becomes a slave.', release_date='2000-05-01',
        vote_average=8.2, genres=[Genre(28, 'Action'), Genre(18, 'Drama')], cast=[Credit(934, 'Russell Crowe')],
    )


def breaking_bad():
    return SeriesDetails(
        id=1396, name='Breaking Bad', overview='A chemist turns to crime.', first_air_date='2008-01-20',
        genres=[Genre(18, 'Drama')], seasons=[SeasonSummary(0, 2), SeasonSummary(1, 7)],
    )


@pytest.fixture
def roots(tmp_path):
    movies = tmp_path / 'movies'
    series = tmp_path / 'series'
    movies.mkdir()
    series.mkdir()
    return movies, series


def sync(store, roots, provider=None, prober=None, **overrides):
    settings = make_settings(*roots, **overrides)
    context = build_context(settings, provider=provider, prober=prober or FakeProber())
    return sync_libraries(store, context)



# filename grammar

def test_parse_name_plain():
    parsed = parse_name('Gladiator')
    assert (parsed.title, parsed.year, parsed.tmdb_id) == ('Gladiator', None, None)


def test_parse_name_tokens_in_any_order():
    assert parse_name('Alien (1979) [TMDBID=348]') == parse_name('Alien [tmdbid=348] (1979)')
    parsed = parse_name('Alien (1979) [TMDBID=348]')
    assert (parsed.title, parsed.year, parsed.tmdb_id) == ('Alien', 1979, 348)


def test_parse_episode():
    ref = parse_episode('Breaking Bad S01E007.mkv')
    assert (ref.season, ref.episode, ref.part) == (1, 7, None)

    ref = parse_episode('s02e03p02 - finale.mkv')
    assert (ref.season, ref.episode, ref.part) == (2, 3, 2)

    assert parse_episode('Bonus Features.mkv') is None


def test_episode_code_and_title():
    assert episode_code(1, 7) == 's01e007'
    assert episode_code(2, 3, 2) == 's02e003p02'
    assert compose_episode_title('Breaking Bad', 1, 1, None, 'Pilot') == 'Breaking Bad: s01e001 Pilot'


def test_sanitize_filename():
    assert sanitize_filename('What? Part 1/2: "End".mkv') == 'What_ Part 1_2_ _End_.mkv'



# configuration

def test_create_and_load_settings(tmp_path):
    path = str(tmp_path / 'settings.json')
    create_settings(path)
    settings = load_settings(path)
    assert settings['default_extension'] == 'mkv'
    assert settings['language'] == 'en-US'
    assert set(settings['libraries']) == {'movies', 'series'}


def test_create_settings_keeps_existing(tmp_path):
    path = tmp_path / 'settings.json'
    path.write_text(json.dumps({'scan_cap': 5}))
    create_settings(str(path))
    assert load_settings(str(path)) == {'scan_cap': 5}


def test_load_settings_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_settings(str(tmp_path / 'missing.json'))

    broken = tmp_path / 'broken.json'
    broken.write_text('{not json')
    with pytest.raises(RuntimeError):
        load_settings(str(broken))


def test_resolve_root(tmp_path):
    root = resolve_root({'path': str(tmp_path), 'subfolder': ''})
    assert root.available
    assert root.path == os.path.normpath(str(tmp_path))

    assert not resolve_root({'path': str(tmp_path / 'gone')}).available
    assert not resolve_root(None).available
    assert not resolve_root({'volume_label': 'no-such-volume-label'}).available


def test_discover_files_filters_and_sorts(tmp_path):
    make_file(str(tmp_path / 'b' / 'two.MKV'))
    make_file(str(tmp_path / 'a' / 'one.mp4'))
    make_file(str(tmp_path / 'a' / 'notes.txt'))

    found = discover_files(str(tmp_path), ['mkv', '.mp4'])
    assert [name for _, name in found] == ['one.mp4', 'two.MKV']


def test_build_context_without_api_key(tmp_path):
    context = build_context(make_settings(tmp_path))
    assert context.provider is None
    assert context.roots[MediaType.MOVIE].available
    assert not context.roots[MediaType.SERIES].available



# reconciliation

def test_movie_is_identified(store, db, roots, provider):
    make_file(str(roots[0] / 'Gladiator (2000).mkv'))
    provider.add_movie(gladiator(), year=2000)

    report = sync(store, roots, provider)

    catalog = db.fetch_catalog()
    assert len(catalog) == 1
    entry = catalog[0]
    assert entry.title == 'Gladiator'
    assert entry.tmdb_id == 98
    assert entry.vote_average == 8.2
    assert entry.relative_file_path == ''
    assert entry.resolution == '1080p'
    assert entry.audio_languages == 'eng, und'
    assert entry.duration == '2:35:00'
    assert db.fetch_metadata(98, MediaType.MOVIE).title == 'Gladiator'
    assert db.fetch_genres(entry.id) == [(28, 'Action'), (18, 'Drama')]
    assert db.fetch_actors(entry.id) == [(934, 'Russell Crowe')]
    assert db.fetch_groupings() == []
    assert report.stored == 1


def test_rescan_is_idempotent(store, db, roots, provider):
    make_file(str(roots[0] / 'Gladiator (2000).mkv'))
    provider.add_movie(gladiator(), year=2000)

    sync(store, roots, provider)
    before = db.fetch_catalog()
    report = sync(store, roots, provider)

    assert db.fetch_catalog() == before
    assert report.analyzed == 0
    assert report.skipped_known == 1


def test_changed_size_is_reanalyzed(store, db, roots, provider):
    path = make_file(str(roots[0] / 'Gladiator (2000).mkv'), size=10)
    provider.add_movie(gladiator(), year=2000)
    sync(store, roots, provider)

    make_file(path, size=20)
    report = sync(store, roots, provider)

    assert report.analyzed == 1
    catalog = db.fetch_catalog()
    assert len(catalog) == 1
    assert catalog[0].file_size_bytes == 20


def test_missing_file_is_flagged_not_deleted(store, db, roots, provider):
    path = make_file(str(roots[0] / 'Gladiator (2000).mkv'))
    provider.add_movie(gladiator(), year=2000)
    sync(store, roots, provider)

    os.remove(path)
    report = sync(store, roots, provider)
    assert report.missing == 1
    assert [e.file_exists for e in db.fetch_catalog()] == [False]

    make_file(path)
    report = sync(store, roots, provider)
    assert report.found_again == 1
    assert [e.file_exists for e in db.fetch_catalog()] == [True]


def test_failed_existence_check_still_discovers(store, db, roots, provider, monkeypatch):
    make_file(str(roots[0] / 'Gladiator (2000).mkv'))
    provider.add_movie(gladiator(), year=2000)

    def locked(self, video_ids, exists):
        raise StoreError(5, 'database is locked')
    monkeypatch.setattr(DB, 'mark_existence', locked)

    report = sync(store, roots, provider)

    assert report.failed == 1
    assert report.stored == 1
    assert [e.tmdb_id for e in db.fetch_catalog()] == [98]


def test_unavailable_root_is_left_alone(store, db, roots, provider, tmp_path):
    make_file(str(roots[0] / 'Gladiator (2000).mkv'))
    provider.add_movie(gladiator(), year=2000)
    sync(store, roots, provider)

    os.rename(roots[0], tmp_path / 'unplugged')
    report = sync(store, roots, provider)

    assert report.missing == 0
    assert [e.file_exists for e in db.fetch_catalog()] == [True]


def test_probe_failure_skips_file(store, db, roots, provider):
    make_file(str(roots[0] / 'Broken.mkv'))
    make_file(str(roots[0] / 'Fine.mkv'))

    report = sync(store, roots, provider, prober=FakeProber(broken={'Broken.mkv'}))

    assert [e.file_name for e in db.fetch_catalog()] == ['Fine.mkv']
    assert report.failed == 1


def test_unmatched_title_gets_basic_record(store, db, roots, provider):
    make_file(str(roots[0] / 'Home Video (1999).mkv'))
    sync(store, roots, provider)

    entry = db.fetch_catalog()[0]
    assert entry.title == 'Home Video'
    assert entry.tmdb_id == 0
    assert entry.vote_average == 0.0


def test_id_hint_without_provider_is_not_applied(store, db, roots):
    make_file(str(roots[0] / 'Alien [TMDBID=348].mkv'))
    sync(store, roots, provider=None)

    entry = db.fetch_catalog()[0]
    assert entry.title == 'Alien'
    assert entry.tmdb_id == 0


def test_id_hint_wins_over_search(store, db, roots, provider):
    make_file(str(roots[0] / 'Gladiator (2000) [TMDBID=98].mkv'))
    provider.add_movie(gladiator())
    provider.add_movie(MovieDetails(id=1, title='Gladiator'), year=2000)

    sync(store, roots, provider)
    assert db.fetch_catalog()[0].tmdb_id == 98


def test_scan_cap_limits_each_run(store, db, roots, provider):
    for name in ('a.mkv', 'b.mkv', 'c.mkv'):
        make_file(str(roots[0] / name))

    sync(store, roots, provider, scan_cap=2)
    assert len(db.fetch_catalog()) == 2

    sync(store, roots, provider, scan_cap=2)
    assert len(db.fetch_catalog()) == 3


def test_cancelled_run_stops(store, db, roots, provider):
    make_file(str(roots[0] / 'a.mkv'))
    cancel = threading.Event()
    cancel.set()

    context = build_context(make_settings(*roots), provider=provider, prober=FakeProber(), cancel=cancel)
    report = sync_libraries(store, context)

    assert report.cancelled
    assert db.fetch_catalog() == []


def test_movie_collection_becomes_grouping(store, db, roots, provider):
    make_file(str(roots[0] / 'Star Wars (1977).mkv'))
    provider.add_movie(MovieDetails(id=11, title='Star Wars', vote_average=8.2, collection_id=10, collection_name='Star Wars Collection'), year=1977)
    provider.collections[10] = CollectionDetails(10, 'Star Wars Collection', 'A galaxy far away.', [11, 1891, 1892])

    sync(store, roots, provider)

    groupings = db.fetch_groupings()
    assert [(g.tmdb_id, g.media_type, g.name) for g in groupings] == [(10, MediaType.MOVIE, 'Star Wars Collection')]
    assert [e.tmdb_id for e in db.fetch_grouping_entries(groupings[0].id)] == [11]


def test_series_episodes(store, db, roots, provider):
    folder = roots[1] / 'Breaking Bad (2008)'
    make_file(str(folder / 'Breaking Bad s01e001.mkv'))
    make_file(str(folder / 'Breaking Bad s01e002.mkv'))
    make_file(str(folder / 'Making Of.mkv'))
    provider.add_series(breaking_bad(), year=2008)
    provider.episodes[(1396, 1, 1)] = EpisodeDetails(
        id=62085, name='Pilot', season_number=1, episode_number=1, vote_average=8.0,
        cast=[Credit(17419, 'Bryan Cranston')], guest_stars=[Credit(17419, 'Bryan Cranston'), Credit(99, 'Guest')],
    )

    report = sync(store, roots, provider)

    catalog = db.fetch_catalog(MediaType.SERIES)
    assert [e.title for e in catalog] == ['Breaking Bad: s01e001 Pilot', 'Breaking Bad: s01e002 Episode 2']
    assert all(e.relative_file_path == 'Breaking Bad (2008)' for e in catalog)
    assert catalog[0].tmdb_id == 62085
    assert report.failed == 1

    # genres go only to the entry that created the grouping
    assert db.fetch_genres(catalog[0].id) == [(18, 'Drama')]
    assert db.fetch_genres(catalog[1].id) == []
    assert db.fetch_actors(catalog[0].id) == [(17419, 'Bryan Cranston'), (99, 'Guest')]

    groupings = db.fetch_groupings()
    assert [(g.tmdb_id, g.name) for g in groupings] == [(1396, 'Breaking Bad')]
    assert len(db.fetch_grouping_entries(groupings[0].id)) == 2
    assert db.fetch_metadata(62085, MediaType.SERIES).title == 'Pilot'


def test_new_episode_joins_existing_grouping(store, db, roots, provider):
    folder = roots[1] / 'Breaking Bad (2008)'
    make_file(str(folder / 's01e001.mkv'))
    provider.add_series(breaking_bad(), year=2008)
    sync(store, roots, provider)

    make_file(str(folder / 's01e003.mkv'))
    provider.series_searches.clear()
    sync(store, roots, provider)

    groupings = db.fetch_groupings()
    assert len(groupings) == 1
    assert len(db.fetch_grouping_entries(groupings[0].id)) == 2
    newest = db.fetch_catalog(MediaType.SERIES)[-1]
    assert newest.title == 'Breaking Bad: s01e003 Episode 3'
    assert db.fetch_genres(newest.id) == []
