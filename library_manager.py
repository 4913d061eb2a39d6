import os
import re
import json
import threading
import logging
logger = logging.getLogger(__name__)


from dataclasses import dataclass, field
from typing import Callable
from dotenv import load_dotenv
load_dotenv()


from database_utils import DB, CatalogEntry, MediaType, ensure_schema
from media_probe import ProbeError, ProbeResult, get_video_metadata
from store import Store, StoreError
from tmdb_client import TMDBClient, ProviderError, MovieDetails



SETTINGS_PATH = 'settings.json'
DEFAULT_EXTENSIONS = ('mp4', 'm4v', 'mkv', 'mpeg', 'mpg', 'avi', 'webp', 'ts') # used in discover_files()
DEFAULT_EXTENSION = 'mkv' # used for fill-up placeholders
MOUNT_BASES = ('/media', '/run/media', '/Volumes', '/mnt') # searched for volume labels

YEAR_TOKEN = re.compile(r'\((?P<year>\d{4})\)')
ID_TOKEN = re.compile(r'\[TMDBID=(?P<tmdb_id>\d+)\]', re.IGNORECASE)
EPISODE_TOKEN = re.compile(r'(?<![a-z0-9])s(?P<season>\d{1,3})e(?P<episode>\d{1,4})(?:p(?P<part>\d{1,2}))?', re.IGNORECASE)
INVALID_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*]')



def create_settings(path: str = SETTINGS_PATH):
    if os.path.exists(path):
        return

    template = {
        'libraries': {
            'movies': {'path': '', 'volume_label': '', 'subfolder': ''},
            'series': {'path': '', 'volume_label': '', 'subfolder': ''},
        },
        'extensions': list(DEFAULT_EXTENSIONS),
        'scan_cap': 0,
        'default_extension': DEFAULT_EXTENSION,
        'language': 'en-US',
        'database': 'catalog.db',
    }

    try:
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(template, f, indent=4)
        logger.info(f'{path} created successfully.')
    except Exception as e:
        logger.critical(f'Failed to create {path}', exc_info=True)
        raise RuntimeError(f'Could not create {path}') from e


def load_settings(path: str = SETTINGS_PATH):
    if not os.path.exists(path):
        logger.error(f'{path} not found.')
        raise FileNotFoundError(f'{path} not found.')

    try:
        with open(path, 'r', encoding='utf-8') as f:
            settings = json.load(f)
    except Exception as e:
        logger.critical(f'Failed to load {path}', exc_info=True)
        raise RuntimeError(f'{path} could not be loaded') from e

    if not settings or not isinstance(settings, dict):
        logger.critical(f'Invalid or missing {path}')
        raise ValueError(f'Invalid or missing {path}')
    return settings


def database_path(settings: dict) -> str:
    return os.getenv('DATABASE_PATH') or settings.get('database') or 'catalog.db'



@dataclass
class MediaRoot:
    path: str
    available: bool


def find_volume(label: str):
    """
    Mount point of the volume carrying `label`, e.g. /media/<user>/<label> or /Volumes/<label>.
    """
    for base in MOUNT_BASES:
        direct = os.path.join(base, label)
        if os.path.isdir(direct):
            return direct

        try:
            users = os.listdir(base)
        except OSError:
            continue
        for user in users:
            candidate = os.path.join(base, user, label)
            if os.path.isdir(candidate):
                return candidate
    return None


def resolve_root(root_cfg) -> MediaRoot:
    """
    Resolve a configured media root to a path and whether it is usable right now. No state is kept.
    """
    if isinstance(root_cfg, str):
        root_cfg = {'path': root_cfg}
    root_cfg = root_cfg or {}

    path = None
    label = root_cfg.get('volume_label')
    if label:
        mount = find_volume(label)
        if mount:
            path = os.path.join(mount, root_cfg.get('subfolder') or '')
        else:
            logger.warning(f'volume "{label}" is not mounted.')
    elif root_cfg.get('path'):
        path = os.path.join(root_cfg['path'], root_cfg.get('subfolder') or '')

    if not path:
        return MediaRoot(None, False)

    path = os.path.normpath(path)
    return MediaRoot(path, os.path.isdir(path))



@dataclass
class LibraryContext:
    roots: dict
    extensions: tuple = DEFAULT_EXTENSIONS
    scan_cap: int = 0
    default_extension: str = DEFAULT_EXTENSION
    provider: TMDBClient = None
    prober: Callable[[str], ProbeResult] = get_video_metadata
    cancel: threading.Event = None

    def cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()


def build_context(settings: dict, provider=None, prober=None, cancel=None) -> LibraryContext:
    libraries = settings.get('libraries') or {}
    roots = {
        MediaType.MOVIE: resolve_root(libraries.get('movies')),
        MediaType.SERIES: resolve_root(libraries.get('series')),
    }
    for media_type, root in roots.items():
        logger.info(f'{media_type} root: "{root.path}" (available: {root.available})')

    if provider is None and os.getenv('API_KEY'):
        provider = TMDBClient(language=settings.get('language') or 'en-US')

    extensions = tuple(e.lower().lstrip('.') for e in settings.get('extensions') or DEFAULT_EXTENSIONS)
    return LibraryContext(
        roots=roots,
        extensions=extensions,
        scan_cap=int(settings.get('scan_cap') or 0),
        default_extension=(settings.get('default_extension') or DEFAULT_EXTENSION).lstrip('.'),
        provider=provider,
        prober=prober or get_video_metadata,
        cancel=cancel,
    )



@dataclass
class ParsedName:
    title: str
    year: int = None
    tmdb_id: int = None


@dataclass
class EpisodeRef:
    season: int
    episode: int
    part: int = None


def parse_name(name: str) -> ParsedName:
    """
    TITLE [(YYYY)] [[TMDBID=n]], the two optional tokens in either order.
    """
    year = None
    tmdb_id = None

    match = YEAR_TOKEN.search(name)
    if match:
        year = int(match.group('year'))
        name = f'{name[:match.start()]} {name[match.end():]}'

    match = ID_TOKEN.search(name)
    if match:
        tmdb_id = int(match.group('tmdb_id'))
        name = f'{name[:match.start()]} {name[match.end():]}'

    title = re.sub(r'\s+', ' ', name).strip()
    return ParsedName(title, year, tmdb_id)


def parse_episode(file_name: str):
    match = EPISODE_TOKEN.search(file_name)
    if not match:
        return None
    part = match.group('part')
    return EpisodeRef(int(match.group('season')), int(match.group('episode')), int(part) if part else None)


def episode_code(season: int, episode: int, part: int = None) -> str:
    code = f's{season:02}e{episode:03}'
    if part:
        code += f'p{part:02}'
    return code


def compose_episode_title(series_name: str, season: int, episode: int, part: int, episode_name: str) -> str:
    return f'{series_name}: {episode_code(season, episode, part)} {episode_name or ""}'.strip()


def sanitize_filename(name: str) -> str:
    return INVALID_FILENAME_CHARS.sub('_', name)


def discover_files(root_path: str, extensions) -> list[tuple[str, str]]:
    """
    All allow-listed files under root_path as (directory, filename), sorted by directory then filename.
    """
    extensions = {e.lower().lstrip('.') for e in extensions}
    found = []
    for dirpath, dirnames, filenames in os.walk(root_path):
        for filename in filenames:
            if os.path.splitext(filename)[1].lower().lstrip('.') in extensions:
                found.append((dirpath, filename))
    found.sort()
    return found



def attach_collection(db: DB, video_id: int, movie: MovieDetails, provider):
    grouping = db.fetch_grouping(movie.collection_id, MediaType.MOVIE)
    if grouping:
        name, overview = grouping.name, grouping.overview
    else:
        try:
            collection = provider.get_collection(movie.collection_id)
            name, overview = collection.name, collection.overview
        except ProviderError as e:
            logger.warning(f'collection {movie.collection_id} lookup failed ({e}), using name from movie details.')
            name, overview = movie.collection_name, ''

    return db.upsert_grouping(video_id, MediaType.MOVIE, movie.collection_id, name, overview)


def attach_movie_details(db: DB, video_id: int, movie: MovieDetails, provider):
    """
    Metadata, genres, cast and (when the movie is part of one) collection grouping for a stored video.
    """
    db.upsert_metadata(video_id, movie.id, MediaType.MOVIE, movie.title, movie.overview, movie.release_date)
    db.upsert_genres(video_id, movie.genres)
    db.upsert_actors(video_id, movie.cast)
    if movie.collection_id:
        attach_collection(db, video_id, movie, provider)



@dataclass
class SeriesRef:
    tmdb_id: int
    name: str
    overview: str = ''
    adult: bool = False
    genres: list = field(default_factory=list)
    is_new: bool = False


@dataclass
class SyncReport:
    found_again: int = 0
    missing: int = 0
    analyzed: int = 0
    stored: int = 0
    skipped_known: int = 0
    failed: int = 0
    cancelled: bool = False



class LibraryScanner:
    """
    Two-phase reconciliation: existence check of cataloged videos, then discovery of new or changed files.
    """

    def __init__(self, db: DB, context: LibraryContext):
        self.db = db
        self.context = context
        self.report = SyncReport()
        self._series = {} # relative folder -> SeriesRef | None, for this run only


    def run(self) -> SyncReport:
        entries = self.db.fetch_catalog()
        logger.info(f'Catalog loaded: {len(entries)} video(s).')

        try:
            self.check_existence(entries)
        except StoreError:
            logger.error('existence check failed, continuing with discovery.', exc_info=True)
            self.report.failed += 1

        known = {(e.relative_file_path, e.file_name, e.file_size_bytes) for e in entries}
        for media_type in MediaType.ALL:
            if self.context.cancelled():
                self.report.cancelled = True
                break
            self.scan_root(media_type, known)

        return self.report


    def check_existence(self, entries: list[CatalogEntry]):
        found_again = []
        missing = []

        for entry in entries:
            root = self.context.roots.get(entry.media_type)
            if not root or not root.available:
                continue

            path = os.path.join(root.path, entry.relative_file_path, entry.file_name)
            exists = os.path.isfile(path)
            if exists and not entry.file_exists:
                found_again.append(entry.id)
            elif not exists and entry.file_exists:
                missing.append(entry.id)

        self.db.mark_existence(found_again, True)
        self.db.mark_existence(missing, False)
        self.report.found_again += len(found_again)
        self.report.missing += len(missing)
        logger.info(f'Existence check: {len(found_again)} found again, {len(missing)} missing.')


    def scan_root(self, media_type: str, known: set):
        root = self.context.roots.get(media_type)
        if not root or not root.available:
            logger.warning(f'{media_type} root unavailable, skipping discovery.')
            return

        files = discover_files(root.path, self.context.extensions)
        logger.info(f'Scanning {media_type} root "{root.path}": {len(files)} file(s).')

        analyzed = 0
        for dirpath, file_name in files:
            if self.context.cancelled():
                logger.info('Scan cancelled.')
                self.report.cancelled = True
                return

            file_path = os.path.join(dirpath, file_name)
            relative = os.path.relpath(dirpath, root.path)
            if relative == os.curdir:
                relative = ''

            try:
                size = os.path.getsize(file_path)
            except OSError:
                logger.warning(f'could not stat "{file_path}"', exc_info=True)
                self.report.failed += 1
                continue

            if (relative, file_name, size) in known:
                self.report.skipped_known += 1
                continue

            if self.context.scan_cap > 0 and analyzed >= self.context.scan_cap:
                logger.info(f'scan cap ({self.context.scan_cap}) reached for {media_type} root.')
                return

            analyzed += 1
            self.report.analyzed += 1
            try:
                if self.analyze_file(media_type, dirpath, relative, file_name, size):
                    self.report.stored += 1
                else:
                    self.report.failed += 1
            except StoreError:
                # the entity graph of this file may be partially written
                logger.error(f'database error while storing "{file_path}"', exc_info=True)
                self.report.failed += 1


    def analyze_file(self, media_type: str, dirpath: str, relative: str, file_name: str, size: int) -> bool:
        file_path = os.path.join(dirpath, file_name)
        logger.debug(f'analyzing: "{file_path}"...')

        if media_type == MediaType.MOVIE:
            parsed = parse_name(os.path.splitext(file_name)[0])
        else:
            parsed = parse_name(os.path.basename(dirpath))

        try:
            probe = self.context.prober(file_path)
        except ProbeError as e:
            logger.warning(f'probe failed ({e.kind.value}) for "{file_path}", skipping: {e.message}')
            return False

        entry = CatalogEntry(
            title=parsed.title,
            file_name=file_name,
            relative_file_path=relative,
            file_size_bytes=size,
            resolution=probe.resolution,
            video_codec=probe.video_codec,
            audio_track_count=probe.audio_track_count,
            audio_channels=probe.joined(probe.audio_channels),
            audio_layouts=probe.joined(probe.audio_layouts),
            audio_languages=probe.joined(probe.audio_languages),
            duration=probe.duration,
            file_exists=True,
            media_type=media_type,
        )

        if self.context.provider is None:
            if parsed.tmdb_id:
                logger.debug(f'no api key, TMDB id hint {parsed.tmdb_id} not verified for "{file_name}"')
            self.db.upsert_video(entry)
            return True

        if media_type == MediaType.MOVIE:
            return self._analyze_movie(entry, parsed)
        return self._analyze_episode(entry, parsed)


    def _analyze_movie(self, entry: CatalogEntry, parsed: ParsedName) -> bool:
        provider = self.context.provider
        try:
            movie = provider.find_movie(parsed.title, parsed.year, parsed.tmdb_id)
        except ProviderError as e:
            logger.warning(f'TMDB lookup failed for "{parsed.title}" ({parsed.year}): {e}')
            movie = None

        if not movie:
            self.db.upsert_video(entry)
            return True

        entry.title = movie.title or entry.title
        entry.tmdb_id = movie.id
        entry.vote_average = movie.vote_average
        entry.is_adult = movie.adult

        video_id = self.db.upsert_video(entry)
        attach_movie_details(self.db, video_id, movie, provider)
        logger.info(f"stored movie: '{entry.title}' ({movie.id}) (ID {video_id})")
        return True


    def _resolve_series(self, relative: str, parsed: ParsedName):
        if relative in self._series:
            return self._series[relative]

        ref = None
        grouping = self.db.fetch_grouping_for_folder(relative, MediaType.SERIES)
        if grouping:
            members = self.db.fetch_grouping_entries(grouping.id)
            adult = any(member.is_adult for member in members)
            ref = SeriesRef(grouping.tmdb_id, grouping.name, grouping.overview, adult)
        else:
            try:
                series = self.context.provider.find_series(parsed.title, parsed.year, parsed.tmdb_id)
            except ProviderError as e:
                logger.warning(f'TMDB lookup failed for series "{parsed.title}" ({parsed.year}): {e}')
                series = None

            if series:
                is_new = self.db.fetch_grouping(series.id, MediaType.SERIES) is None
                ref = SeriesRef(series.id, series.name, series.overview, series.adult, series.genres, is_new)

        self._series[relative] = ref
        return ref


    def _analyze_episode(self, entry: CatalogEntry, parsed: ParsedName) -> bool:
        episode_ref = parse_episode(entry.file_name)
        if episode_ref is None:
            logger.warning(f'could not parse season/episode from "{entry.file_name}", skipping.')
            return False

        series = self._resolve_series(entry.relative_file_path, parsed)
        if series is None:
            self.db.upsert_video(entry)
            return True

        try:
            episode = self.context.provider.get_episode(series.tmdb_id, episode_ref.season, episode_ref.episode)
        except ProviderError as e:
            logger.warning(f'TMDB episode lookup failed for "{series.name}" {episode_code(episode_ref.season, episode_ref.episode)}: {e}')
            self.db.upsert_video(entry)
            return True

        entry.title = compose_episode_title(series.name, episode_ref.season, episode_ref.episode, episode_ref.part, episode.name)
        entry.tmdb_id = episode.id
        entry.vote_average = episode.vote_average
        entry.is_adult = series.adult

        video_id = self.db.upsert_video(entry)
        self.db.upsert_metadata(video_id, episode.id, MediaType.SERIES, episode.name, episode.overview, episode.air_date)
        self.db.upsert_grouping(video_id, MediaType.SERIES, series.tmdb_id, series.name, series.overview)
        self.db.upsert_actors(video_id, episode.all_cast())

        if series.is_new:
            self.db.upsert_genres(video_id, series.genres)
            series.is_new = False

        logger.info(f"stored episode: '{entry.title}' ({episode.id}) (ID {video_id})")
        return True



def sync_libraries(store: Store, context: LibraryContext) -> SyncReport:
    logger.info('Initializing library verification...')
    report = LibraryScanner(DB(store), context).run()
    logger.info(f'Library verification completed: {report}')
    return report




if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(name)s - %(message)s')
    create_settings()
    SETTINGS = load_settings()
    with Store(database_path(SETTINGS)) as store:
        ensure_schema(store)
        sync_libraries(store, build_context(SETTINGS))
