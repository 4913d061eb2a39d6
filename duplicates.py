from collections import Counter

from database_utils import CatalogEntry, MediaType


# Episodes reuse generic file names, so all series entries share this bucket and it never counts as a collision.
SERIES_FILENAME_KEY = '\x00series'


def title_key(entry: CatalogEntry) -> str:
    return f'{entry.title}|{entry.media_type}|{entry.tmdb_id}'


def file_name_key(entry: CatalogEntry) -> str:
    if entry.media_type == MediaType.SERIES:
        return SERIES_FILENAME_KEY
    return entry.file_name


def id_key(entry: CatalogEntry) -> str:
    return f'{entry.media_type}|{entry.tmdb_id}'


def find_duplicates(entries: list[CatalogEntry]) -> list[CatalogEntry]:
    """
    Entries that look duplicated within the snapshot, in snapshot order.

    An entry is flagged when both its title key and its file name occur more than once,
    or when another entry carries the same non-zero TMDB id and media type.
    """
    titles = Counter(title_key(e) for e in entries)
    file_names = Counter(file_name_key(e) for e in entries)
    ids = Counter(id_key(e) for e in entries if e.tmdb_id != 0)

    flagged = []
    for entry in entries:
        name_key = file_name_key(entry)
        file_collision = name_key != SERIES_FILENAME_KEY and file_names[name_key] > 1

        same_title_and_file = titles[title_key(entry)] > 1 and file_collision
        same_id = entry.tmdb_id != 0 and ids[id_key(entry)] > 1
        if same_title_and_file or same_id:
            flagged.append(entry)
    return flagged


def duplicate_view(entries: list[CatalogEntry], enabled: bool) -> list[CatalogEntry]:
    """Flagged entries when the view is on, the full snapshot otherwise."""
    if not enabled:
        return list(entries)
    return find_duplicates(entries)
