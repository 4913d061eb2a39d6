import logging
logger = logging.getLogger(__name__)

from database_utils import DB, CatalogEntry, Grouping, MediaType
from library_manager import DEFAULT_EXTENSION, parse_episode, compose_episode_title, episode_code, sanitize_filename
from store import Store, StoreError
from tmdb_client import ProviderError



def _placeholder(title: str, file_name: str, relative: str, media_type: str, tmdb_id: int, vote_average: float, is_adult: bool = False) -> CatalogEntry:
    return CatalogEntry(
        title=title,
        file_name=sanitize_filename(file_name),
        relative_file_path=relative,
        file_size_bytes=0,
        file_exists=False,
        tmdb_id=tmdb_id,
        vote_average=vote_average,
        media_type=media_type,
        is_adult=is_adult,
    )


def occupied(db: DB, entry: CatalogEntry) -> bool:
    """
    True when a catalog row already sits at the placeholder's path; that row is never replaced.
    """
    video_id = db.fetch_video_id(entry.relative_file_path, entry.file_name)
    if video_id is None:
        return False
    logger.warning(f"'{entry.relative_file_path}/{entry.file_name}' is already cataloged (ID {video_id}), no placeholder written.")
    return True


def fill_up_series(db: DB, grouping: Grouping, members: list[CatalogEntry], provider, extension: str) -> int:
    series = provider.get_series(grouping.tmdb_id)

    present = set()
    for member in members:
        ref = parse_episode(member.file_name)
        if ref:
            present.add((ref.season, ref.episode))

    missing = [pair for pair in series.roster() if pair not in present]
    logger.info(f"'{series.name}': {len(series.roster())} canonical episode(s), {len(missing)} missing.")

    relative = members[0].relative_file_path if members else sanitize_filename(series.name)
    is_adult = any(member.is_adult for member in members) or series.adult

    created = 0
    for season, episode_number in missing:
        try:
            episode = provider.get_episode(series.id, season, episode_number)
        except ProviderError as e:
            logger.warning(f"episode {episode_code(season, episode_number)} of '{series.name}' not available: {e}")
            continue

        entry = _placeholder(
            title=compose_episode_title(series.name, season, episode_number, None, episode.name),
            file_name=f'{episode_code(season, episode_number)} {episode.name}'.strip() + f'.{extension}',
            relative=relative,
            media_type=MediaType.SERIES,
            tmdb_id=episode.id,
            vote_average=episode.vote_average,
            is_adult=is_adult,
        )
        try:
            if occupied(db, entry):
                continue
            video_id = db.upsert_video(entry)
            db.upsert_metadata(video_id, episode.id, MediaType.SERIES, episode.name, episode.overview, episode.air_date)
            db.upsert_grouping(video_id, MediaType.SERIES, grouping.tmdb_id, grouping.name, grouping.overview)
            db.upsert_actors(video_id, episode.all_cast())
        except StoreError:
            logger.error(f"failed to store placeholder '{entry.file_name}'", exc_info=True)
            continue
        created += 1

    return created


def fill_up_collection(db: DB, grouping: Grouping, members: list[CatalogEntry], provider, extension: str) -> int:
    collection = provider.get_collection(grouping.tmdb_id)

    present = {member.tmdb_id for member in members}
    missing = [part for part in collection.parts if part not in present]
    logger.info(f"'{collection.name}': {len(collection.parts)} part(s), {len(missing)} missing.")

    relative = members[0].relative_file_path if members else sanitize_filename(collection.name)

    created = 0
    for part in missing:
        try:
            movie = provider.get_movie(part)
        except ProviderError as e:
            logger.warning(f"part {part} of '{collection.name}' not available: {e}")
            continue

        entry = _placeholder(
            title=movie.title,
            file_name=f'{movie.title}.{extension}',
            relative=relative,
            media_type=MediaType.MOVIE,
            tmdb_id=movie.id,
            vote_average=movie.vote_average,
            is_adult=movie.adult,
        )
        try:
            if occupied(db, entry):
                continue
            video_id = db.upsert_video(entry)
            db.upsert_metadata(video_id, movie.id, MediaType.MOVIE, movie.title, movie.overview, movie.release_date)
            db.upsert_genres(video_id, movie.genres)
            db.upsert_actors(video_id, movie.cast)
            db.upsert_grouping(video_id, MediaType.MOVIE, grouping.tmdb_id, grouping.name, grouping.overview)
        except StoreError:
            logger.error(f"failed to store placeholder '{entry.file_name}'", exc_info=True)
            continue
        created += 1

    return created


def fill_up_grouping(store: Store, grouping_id: int, provider, extension: str = DEFAULT_EXTENSION) -> int:
    """
    Create placeholder videos (file_exists=False, size 0) for the episodes or collection parts
    TMDB knows about but the catalog does not. Returns how many were created.
    """
    db = DB(store)
    grouping = db.fetch_grouping_by_id(grouping_id)
    if grouping is None:
        raise LookupError(f'grouping {grouping_id} not found')
    if not grouping.tmdb_id:
        raise ValueError(f"grouping '{grouping.name}' is not linked to TMDB")

    members = db.fetch_grouping_entries(grouping.id)
    extension = extension.lstrip('.')
    logger.info(f"Filling up '{grouping.name}' ({grouping.media_type}, {len(members)} present)...")

    if grouping.media_type == MediaType.SERIES:
        created = fill_up_series(db, grouping, members, provider, extension)
    else:
        created = fill_up_collection(db, grouping, members, provider, extension)

    logger.info(f"Fill-up of '{grouping.name}' created {created} placeholder(s).")
    return created
