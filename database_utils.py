from __future__ import annotations
from dataclasses import dataclass
from sqlalchemy import MetaData, Table, Column, Integer, BigInteger, String, Float, Boolean, Text, ForeignKey, UniqueConstraint, Index
from sqlalchemy.schema import CreateTable, CreateIndex

from store import Store, StoreError, StepResult

import logging
logger = logging.getLogger(__name__)



EXISTENCE_BATCH_SIZE = 500 # keeps each IN-list well under sqlite's bound variable limit

metadata_obj = MetaData()


class MediaType():
    MOVIE = 'movie'
    SERIES = 'series'

    ALL = (MOVIE, SERIES)



videos = Table(
    'videos',
    metadata_obj,
    Column('id', Integer, primary_key=True),
    Column('title', String, nullable=True),
    Column('file_name', String, nullable=False),
    Column('relative_file_path', String, nullable=False),
    Column('file_size_bytes', BigInteger, nullable=False, default=0),
    Column('file_size_mb', Float, nullable=False, default=0),
    Column('resolution', String, nullable=True),
    Column('video_codec', String, nullable=True),
    Column('audio_track_count', Integer, nullable=False, default=0),
    Column('audio_channels', String, nullable=True),
    Column('audio_layouts', String, nullable=True),
    Column('audio_languages', String, nullable=True),
    Column('duration', String, nullable=True),
    Column('file_exists', Boolean, nullable=False, default=True),
    Column('tmdb_id', BigInteger, nullable=False, default=0),
    Column('vote_average', Float, nullable=False, default=0),
    Column('media_type', String, nullable=False),
    Column('is_adult', Boolean, nullable=False, default=False),
    UniqueConstraint('relative_file_path', 'file_name', name='uix_video_file'),
    Index('ix_videos_tmdb', 'media_type', 'tmdb_id'),
)

media_metadata = Table(
    'media_metadata',
    metadata_obj,
    Column('id', Integer, primary_key=True),
    Column('tmdb_id', BigInteger, nullable=False),
    Column('media_type', String, nullable=False),
    Column('title', String, nullable=True),
    Column('overview', Text, nullable=True),
    Column('release_date', String, nullable=True),
    UniqueConstraint('tmdb_id', 'media_type', name='uix_metadata_tmdb'),
)

groupings = Table(
    'groupings',
    metadata_obj,
    Column('id', Integer, primary_key=True),
    Column('tmdb_id', BigInteger, nullable=False),
    Column('media_type', String, nullable=False),
    Column('name', String, nullable=True),
    Column('overview', Text, nullable=True),
    UniqueConstraint('tmdb_id', 'media_type', name='uix_grouping_tmdb'),
)

grouping_members = Table(
    'grouping_members',
    metadata_obj,
    Column('video_id', ForeignKey('videos.id', ondelete="CASCADE"), primary_key=True),
    Column('grouping_id', ForeignKey('groupings.id', ondelete="CASCADE"), primary_key=True, index=True),
)

genres = Table(
    'genres',
    metadata_obj,
    Column('tmdb_id', BigInteger, primary_key=True, autoincrement=False),
    Column('name', String, nullable=False),
)

video_genres = Table(
    'video_genres',
    metadata_obj,
    Column('video_id', ForeignKey('videos.id', ondelete="CASCADE"), primary_key=True),
    Column('genre_id', ForeignKey('genres.tmdb_id', ondelete="CASCADE"), primary_key=True, index=True),
)

actors = Table(
    'actors',
    metadata_obj,
    Column('tmdb_id', BigInteger, primary_key=True, autoincrement=False),
    Column('name', String, nullable=False),
)

video_actors = Table(
    'video_actors',
    metadata_obj,
    Column('video_id', ForeignKey('videos.id', ondelete="CASCADE"), primary_key=True),
    Column('actor_id', ForeignKey('actors.tmdb_id', ondelete="CASCADE"), primary_key=True, index=True),
)



def ensure_schema(store: Store):
    """
    Create every table and index if absent, inside one transaction.

    Any failure rolls the whole transaction back and is re-raised: the catalog is unusable without its schema.
    """
    store.execute('BEGIN')
    try:
        for table in metadata_obj.sorted_tables:
            store.execute(CreateTable(table, if_not_exists=True))
            for index in table.indexes:
                store.execute(CreateIndex(index, if_not_exists=True))
        store.execute('COMMIT')
    except StoreError:
        logger.critical('failed to create database schema, rolling back.', exc_info=True)
        store.execute('ROLLBACK')
        raise

    logger.debug(f'schema ready: {", ".join(t.name for t in metadata_obj.sorted_tables)}')



@dataclass
class CatalogEntry:
    title: str
    file_name: str
    relative_file_path: str
    file_size_bytes: int = 0
    resolution: str = None
    video_codec: str = None
    audio_track_count: int = 0
    audio_channels: str = ''
    audio_layouts: str = ''
    audio_languages: str = ''
    duration: str = ''
    file_exists: bool = True
    tmdb_id: int = 0
    vote_average: float = 0.0
    media_type: str = MediaType.MOVIE
    is_adult: bool = False
    id: int = None

    @property
    def file_size_mb(self) -> float:
        return round(self.file_size_bytes / 2**20, 2)


@dataclass
class Grouping:
    id: int
    tmdb_id: int
    media_type: str
    name: str
    overview: str


@dataclass
class MetadataRecord:
    tmdb_id: int
    media_type: str
    title: str
    overview: str
    release_date: str

    @property
    def year(self):
        if self.release_date and self.release_date[:4].isdigit():
            return int(self.release_date[:4])
        return None



VIDEO_COLUMNS = (
    'title', 'file_name', 'relative_file_path', 'file_size_bytes', 'file_size_mb',
    'resolution', 'video_codec', 'audio_track_count', 'audio_channels', 'audio_layouts',
    'audio_languages', 'duration', 'file_exists', 'tmdb_id', 'vote_average', 'media_type', 'is_adult',
)
# the conflict key itself is not rewritten
VIDEO_UPDATE_COLUMNS = [c for c in VIDEO_COLUMNS if c not in ('relative_file_path', 'file_name')]

UPSERT_VIDEO_SQL = (
    f"INSERT INTO videos ({', '.join(VIDEO_COLUMNS)}) "
    f"VALUES ({', '.join(':' + c for c in VIDEO_COLUMNS)}) "
    f"ON CONFLICT (relative_file_path, file_name) DO UPDATE SET "
    f"{', '.join(f'{c} = excluded.{c}' for c in VIDEO_UPDATE_COLUMNS)}"
)

SELECT_VIDEO_SQL = f"SELECT id, {', '.join(VIDEO_COLUMNS)} FROM videos"
SELECT_GROUPING_SQL = "SELECT g.id, g.tmdb_id, g.media_type, g.name, g.overview FROM groupings g"

# Orphan rule: the shared row goes only when this video is its single referencer.
DELETE_ORPHANS_SQL = (
    "DELETE FROM {dictionary} WHERE {dictionary_key} IN ("
    " SELECT {ref} FROM {junction}"
    " WHERE {ref} IN (SELECT {ref} FROM {junction} WHERE video_id = :video_id)"
    " GROUP BY {ref}"
    " HAVING COUNT(*) = 1 AND MAX(video_id) = :video_id)"
)



def _int(value, default=0):
    return int(value) if value not in (None, '') else default


def _float(value, default=0.0):
    return float(value) if value not in (None, '') else default


def _bool(value):
    return value not in (None, '', '0')


def entry_from_row(values: list) -> CatalogEntry:
    return CatalogEntry(
        id=_int(values[0], None),
        title=values[1],
        file_name=values[2],
        relative_file_path=values[3] or '',
        file_size_bytes=_int(values[4]),
        # values[5] is file_size_mb, always derived from the byte size
        resolution=values[6],
        video_codec=values[7],
        audio_track_count=_int(values[8]),
        audio_channels=values[9] or '',
        audio_layouts=values[10] or '',
        audio_languages=values[11] or '',
        duration=values[12] or '',
        file_exists=_bool(values[13]),
        tmdb_id=_int(values[14]),
        vote_average=_float(values[15]),
        media_type=values[16],
        is_adult=_bool(values[17]),
    )


def grouping_from_row(values: list) -> Grouping:
    return Grouping(
        id=_int(values[0], None),
        tmdb_id=_int(values[1]),
        media_type=values[2],
        name=values[3],
        overview=values[4],
    )



class DB():
    """
    Typed catalog operations. Every method prepares, binds, steps and finalizes its own statements.
    """

    def __init__(self, store: Store):
        self.store = store


    def _execute(self, sql: str, **params):
        with self.store.prepare(sql) as stmt:
            for name, value in params.items():
                stmt.bind(name, value)
            stmt.step()


    def _query(self, sql: str, **params) -> list[list]:
        rows = []
        with self.store.prepare(sql) as stmt:
            for name, value in params.items():
                stmt.bind(name, value)

            status, values = stmt.step_and_get_row()
            while status is StepResult.ROW:
                rows.append(values)
                status, values = stmt.step_and_get_row()
        return rows


    # -- videos

    def upsert_video(self, entry: CatalogEntry) -> int:
        """
        Insert or fully replace the video identified by (relative_file_path, file_name).

        Returns the row id, re-queried by the unique key: last_insert_id() is stale when the upsert took the update path.
        """
        with self.store.prepare(UPSERT_VIDEO_SQL) as stmt:
            stmt.bind_text('title', entry.title)
            stmt.bind_text('file_name', entry.file_name)
            stmt.bind_text('relative_file_path', entry.relative_file_path)
            stmt.bind_int64('file_size_bytes', entry.file_size_bytes)
            stmt.bind_double('file_size_mb', entry.file_size_mb)
            stmt.bind_text('resolution', entry.resolution)
            stmt.bind_text('video_codec', entry.video_codec)
            stmt.bind_int('audio_track_count', entry.audio_track_count)
            stmt.bind_text('audio_channels', entry.audio_channels)
            stmt.bind_text('audio_layouts', entry.audio_layouts)
            stmt.bind_text('audio_languages', entry.audio_languages)
            stmt.bind_text('duration', entry.duration)
            stmt.bind_bool('file_exists', entry.file_exists)
            stmt.bind_int64('tmdb_id', entry.tmdb_id)
            stmt.bind_double('vote_average', entry.vote_average)
            stmt.bind_text('media_type', entry.media_type)
            stmt.bind_bool('is_adult', entry.is_adult)
            stmt.step()

        video_id = self.fetch_video_id(entry.relative_file_path, entry.file_name)
        if video_id is None:
            raise StoreError(1, f'video vanished after upsert: "{entry.relative_file_path}", "{entry.file_name}"')

        entry.id = video_id
        logger.debug(f"upserted video: '{entry.media_type}', '{entry.title}' (ID {video_id})")
        return video_id


    def update_external_id(self, video_id: int, tmdb_id: int, vote_average: float):
        self._execute(
            "UPDATE videos SET tmdb_id = :tmdb_id, vote_average = :vote_average WHERE id = :video_id",
            tmdb_id=int(tmdb_id), vote_average=float(vote_average or 0), video_id=video_id
        )


    def mark_existence(self, video_ids: list[int], exists: bool):
        """
        Set file_exists for the given ids, one IN-list statement per batch.
        """
        video_ids = list(video_ids)
        for start in range(0, len(video_ids), EXISTENCE_BATCH_SIZE):
            batch = video_ids[start:start + EXISTENCE_BATCH_SIZE]
            names = [f'id{i}' for i in range(len(batch))]
            sql = f"UPDATE videos SET file_exists = :exists WHERE id IN ({', '.join(':' + n for n in names)})"

            with self.store.prepare(sql) as stmt:
                stmt.bind_bool('exists', exists)
                for name, video_id in zip(names, batch):
                    stmt.bind_int64(name, video_id)
                stmt.step()


    def delete_video(self, video_id: int):
        self._execute("DELETE FROM videos WHERE id = :video_id", video_id=video_id)


    def fetch_video_id(self, relative_file_path: str, file_name: str):
        rows = self._query(
            "SELECT id FROM videos WHERE relative_file_path = :relative_file_path AND file_name = :file_name",
            relative_file_path=relative_file_path, file_name=file_name
        )
        return _int(rows[0][0]) if rows else None


    def fetch_video(self, video_id: int):
        rows = self._query(f"{SELECT_VIDEO_SQL} WHERE id = :video_id", video_id=video_id)
        return entry_from_row(rows[0]) if rows else None


    def fetch_catalog(self, media_type: str = None) -> list[CatalogEntry]:
        if media_type:
            rows = self._query(f"{SELECT_VIDEO_SQL} WHERE media_type = :media_type ORDER BY id", media_type=media_type)
        else:
            rows = self._query(f"{SELECT_VIDEO_SQL} ORDER BY id")
        return [entry_from_row(row) for row in rows]


    # -- metadata

    def upsert_metadata(self, video_id: int, tmdb_id: int, media_type: str, title: str, overview: str, release_date: str):
        self._execute(
            "INSERT INTO media_metadata (tmdb_id, media_type, title, overview, release_date) "
            "VALUES (:tmdb_id, :media_type, :title, :overview, :release_date) "
            "ON CONFLICT (tmdb_id, media_type) DO UPDATE SET "
            "title = excluded.title, overview = excluded.overview, release_date = excluded.release_date",
            tmdb_id=int(tmdb_id), media_type=media_type, title=title, overview=overview, release_date=release_date
        )
        logger.debug(f"upserted metadata ({tmdb_id}, '{media_type}') for video (ID {video_id})")


    def delete_metadata(self, tmdb_id: int, media_type: str):
        self._execute(
            "DELETE FROM media_metadata WHERE tmdb_id = :tmdb_id AND media_type = :media_type",
            tmdb_id=int(tmdb_id), media_type=media_type
        )


    def fetch_metadata(self, tmdb_id: int, media_type: str):
        rows = self._query(
            "SELECT tmdb_id, media_type, title, overview, release_date FROM media_metadata "
            "WHERE tmdb_id = :tmdb_id AND media_type = :media_type",
            tmdb_id=int(tmdb_id), media_type=media_type
        )
        if not rows:
            return None
        tmdb_id, media_type, title, overview, release_date = rows[0]
        return MetadataRecord(_int(tmdb_id), media_type, title, overview, release_date)


    # -- genres & actors

    def _upsert_dictionary(self, video_id: int, items, dictionary: str, junction: str, ref: str):
        for item in items:
            if not item.id:
                logger.warning(f'skipping {dictionary} entry without id: {item}')
                continue

            self._execute(
                f"INSERT OR IGNORE INTO {dictionary} (tmdb_id, name) VALUES (:tmdb_id, :name)",
                tmdb_id=int(item.id), name=item.name or ''
            )
            self._execute(
                f"INSERT OR IGNORE INTO {junction} (video_id, {ref}) VALUES (:video_id, :ref)",
                video_id=video_id, ref=int(item.id)
            )


    def upsert_genres(self, video_id: int, genre_list):
        self._upsert_dictionary(video_id, genre_list, 'genres', 'video_genres', 'genre_id')


    def upsert_actors(self, video_id: int, actor_list):
        self._upsert_dictionary(video_id, actor_list, 'actors', 'video_actors', 'actor_id')


    def _delete_with_orphans(self, video_id: int, dictionary: str, dictionary_key: str, junction: str, ref: str):
        self._execute(
            DELETE_ORPHANS_SQL.format(dictionary=dictionary, dictionary_key=dictionary_key, junction=junction, ref=ref),
            video_id=video_id
        )
        self._execute(f"DELETE FROM {junction} WHERE video_id = :video_id", video_id=video_id)


    def delete_genres(self, video_id: int):
        self._delete_with_orphans(video_id, 'genres', 'tmdb_id', 'video_genres', 'genre_id')


    def delete_actors(self, video_id: int):
        self._delete_with_orphans(video_id, 'actors', 'tmdb_id', 'video_actors', 'actor_id')


    def fetch_genres(self, video_id: int) -> list[tuple[int, str]]:
        rows = self._query(
            "SELECT g.tmdb_id, g.name FROM genres g JOIN video_genres vg ON vg.genre_id = g.tmdb_id "
            "WHERE vg.video_id = :video_id ORDER BY g.name",
            video_id=video_id
        )
        return [(_int(tmdb_id), name) for tmdb_id, name in rows]


    def fetch_actors(self, video_id: int) -> list[tuple[int, str]]:
        rows = self._query(
            "SELECT a.tmdb_id, a.name FROM actors a JOIN video_actors va ON va.actor_id = a.tmdb_id "
            "WHERE va.video_id = :video_id ORDER BY a.name",
            video_id=video_id
        )
        return [(_int(tmdb_id), name) for tmdb_id, name in rows]


    # -- groupings

    def upsert_grouping(self, video_id: int, media_type: str, tmdb_group_id: int, name: str, overview: str) -> int:
        """
        Link the video to the series/collection grouping, creating the grouping on first use.

        Read-then-write: at most one grouping per (tmdb_id, media_type) holds only under single-caller access.
        """
        grouping = self.fetch_grouping(tmdb_group_id, media_type)
        if grouping:
            grouping_id = grouping.id
        else:
            self._execute(
                "INSERT INTO groupings (tmdb_id, media_type, name, overview) VALUES (:tmdb_id, :media_type, :name, :overview)",
                tmdb_id=int(tmdb_group_id), media_type=media_type, name=name, overview=overview
            )
            grouping_id = self.store.last_insert_id()
            logger.info(f"created grouping: '{media_type}', '{name}' ({tmdb_group_id}) (ID {grouping_id})")

        self._execute(
            "INSERT OR IGNORE INTO grouping_members (video_id, grouping_id) VALUES (:video_id, :grouping_id)",
            video_id=video_id, grouping_id=grouping_id
        )
        return grouping_id


    def delete_grouping(self, video_id: int):
        self._delete_with_orphans(video_id, 'groupings', 'id', 'grouping_members', 'grouping_id')


    def fetch_grouping(self, tmdb_id: int, media_type: str):
        rows = self._query(
            f"{SELECT_GROUPING_SQL} WHERE g.tmdb_id = :tmdb_id AND g.media_type = :media_type",
            tmdb_id=int(tmdb_id), media_type=media_type
        )
        return grouping_from_row(rows[0]) if rows else None


    def fetch_grouping_by_id(self, grouping_id: int):
        rows = self._query(f"{SELECT_GROUPING_SQL} WHERE g.id = :grouping_id", grouping_id=grouping_id)
        return grouping_from_row(rows[0]) if rows else None


    def fetch_grouping_for_folder(self, relative_file_path: str, media_type: str):
        """
        Grouping already linked to any video in the given folder.
        """
        rows = self._query(
            f"{SELECT_GROUPING_SQL} "
            "JOIN grouping_members m ON m.grouping_id = g.id "
            "JOIN videos v ON v.id = m.video_id "
            "WHERE v.relative_file_path = :relative_file_path AND v.media_type = :media_type "
            "ORDER BY g.id LIMIT 1",
            relative_file_path=relative_file_path, media_type=media_type
        )
        return grouping_from_row(rows[0]) if rows else None


    def fetch_grouping_entries(self, grouping_id: int) -> list[CatalogEntry]:
        columns = ', '.join(f'v.{c}' for c in VIDEO_COLUMNS)
        rows = self._query(
            f"SELECT v.id, {columns} FROM videos v "
            "JOIN grouping_members m ON m.video_id = v.id "
            "WHERE m.grouping_id = :grouping_id ORDER BY v.relative_file_path, v.file_name",
            grouping_id=grouping_id
        )
        return [entry_from_row(row) for row in rows]


    def fetch_groupings(self) -> list[Grouping]:
        return [grouping_from_row(row) for row in self._query(f"{SELECT_GROUPING_SQL} ORDER BY g.name")]
