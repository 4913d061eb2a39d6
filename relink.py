import logging
logger = logging.getLogger(__name__)

from enum import Enum

from database_utils import DB, CatalogEntry, MediaType
from library_manager import attach_movie_details, parse_episode, episode_code
from store import Store
from tmdb_client import ProviderError



class LinkState(Enum):
    UNLINKED = 'unlinked'
    LINKED = 'linked'


def link_state(entry: CatalogEntry) -> LinkState:
    return LinkState.LINKED if entry.tmdb_id else LinkState.UNLINKED


def detach_entry(db: DB, entry: CatalogEntry):
    """
    Drop genre, cast and grouping links (orphaned shared rows with them) and the metadata of the current TMDB id.
    """
    db.delete_genres(entry.id)
    db.delete_actors(entry.id)
    db.delete_grouping(entry.id)
    if entry.tmdb_id:
        db.delete_metadata(entry.tmdb_id, entry.media_type)


def _unlink(db: DB, entry: CatalogEntry) -> LinkState:
    db.update_external_id(entry.id, 0, 0.0)
    entry.tmdb_id = 0
    entry.vote_average = 0.0
    return LinkState.UNLINKED


def _relink_movie(db: DB, entry: CatalogEntry, tmdb_id: int, provider) -> bool:
    movie = provider.get_movie(tmdb_id)

    db.update_external_id(entry.id, movie.id, movie.vote_average)
    entry.tmdb_id = movie.id
    entry.vote_average = movie.vote_average
    attach_movie_details(db, entry.id, movie, provider)
    return True


def _relink_episode(db: DB, entry: CatalogEntry, series_id: int, provider) -> bool:
    """
    For episodes the operator supplies the series id; the episode itself is located by the s/e code in the file name.
    """
    episode_ref = parse_episode(entry.file_name)
    if episode_ref is None:
        logger.warning(f'could not parse season/episode from "{entry.file_name}", cannot relink.')
        return False

    series = provider.get_series(series_id)
    episode = provider.get_episode(series.id, episode_ref.season, episode_ref.episode)

    db.update_external_id(entry.id, episode.id, episode.vote_average)
    entry.tmdb_id = episode.id
    entry.vote_average = episode.vote_average
    db.upsert_metadata(entry.id, episode.id, MediaType.SERIES, episode.name, episode.overview, episode.air_date)
    db.upsert_actors(entry.id, episode.all_cast())

    # series genres belong to the entry that creates the grouping, as in a scan
    is_new = db.fetch_grouping(series.id, MediaType.SERIES) is None
    db.upsert_grouping(entry.id, MediaType.SERIES, series.id, series.name, series.overview)
    if is_new:
        db.upsert_genres(entry.id, series.genres)
    logger.debug(f"relinked episode {episode_code(episode_ref.season, episode_ref.episode)} of '{series.name}'")
    return True


def change_external_id(store: Store, video_id: int, new_tmdb_id: int, provider=None) -> LinkState:
    """
    Reassign the TMDB id of a cataloged video.

    Old associations are removed before anything is fetched, so a failed lookup leaves the video unlinked
    rather than pointing at metadata of the previous id.
    """
    db = DB(store)
    entry = db.fetch_video(video_id)
    if entry is None:
        raise LookupError(f'video {video_id} not found')

    new_tmdb_id = int(new_tmdb_id or 0)
    logger.info(f"Relinking '{entry.title}' (ID {video_id}): {entry.tmdb_id} -> {new_tmdb_id}")

    detach_entry(db, entry)

    if new_tmdb_id == 0:
        return _unlink(db, entry)

    if provider is None:
        logger.warning(f'no api key, cannot look up {new_tmdb_id}; video (ID {video_id}) left unlinked.')
        return _unlink(db, entry)

    try:
        if entry.media_type == MediaType.SERIES:
            linked = _relink_episode(db, entry, new_tmdb_id, provider)
        else:
            linked = _relink_movie(db, entry, new_tmdb_id, provider)
    except ProviderError as e:
        logger.warning(f'TMDB lookup of {new_tmdb_id} failed ({e}); video (ID {video_id}) left unlinked.')
        linked = False

    if not linked:
        return _unlink(db, entry)

    logger.info(f"Relinked '{entry.title}' (ID {video_id}) to {entry.tmdb_id}")
    return LinkState.LINKED


def remove_entry(store: Store, video_id: int):
    """
    Operator delete: associations first (with orphan cleanup), then the video row.
    """
    db = DB(store)
    entry = db.fetch_video(video_id)
    if entry is None:
        raise LookupError(f'video {video_id} not found')

    detach_entry(db, entry)
    db.delete_video(video_id)
    logger.info(f"deleted video: '{entry.title}' (ID {video_id})")
