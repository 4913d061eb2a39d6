import os
import time
import requests
import logging
logger = logging.getLogger(__name__)

from dataclasses import dataclass, field
from dotenv import load_dotenv
load_dotenv()




class ProviderError(Exception):
    """
    Network or parse failure talking to TMDB, or an explicit "not found" answer.
    """

    def __init__(self, message: str, status: int = None):
        super().__init__(message)
        self.status = status

    @property
    def not_found(self) -> bool:
        return self.status == 404



@dataclass
class Genre:
    id: int
    name: str


@dataclass
class Credit:
    id: int
    name: str


@dataclass
class SearchResult:
    id: int
    title: str
    release_date: str = None


@dataclass
class MovieDetails:
    id: int
    title: str
    overview: str = ''
    release_date: str = ''
    vote_average: float = 0.0
    adult: bool = False
    genres: list[Genre] = field(default_factory=list)
    cast: list[Credit] = field(default_factory=list)
    collection_id: int = None
    collection_name: str = None


@dataclass
class SeasonSummary:
    season_number: int
    episode_count: int


@dataclass
class SeriesDetails:
    id: int
    name: str
    overview: str = ''
    first_air_date: str = ''
    vote_average: float = 0.0
    adult: bool = False
    genres: list[Genre] = field(default_factory=list)
    cast: list[Credit] = field(default_factory=list)
    seasons: list[SeasonSummary] = field(default_factory=list)

    def roster(self) -> list[tuple[int, int]]:
        """
        Every canonical (season, episode) pair, specials (season 0) excluded.
        """
        return [
            (season.season_number, episode)
            for season in self.seasons
            if season.season_number > 0
            for episode in range(1, season.episode_count + 1)
        ]


@dataclass
class EpisodeDetails:
    id: int
    name: str
    season_number: int
    episode_number: int
    overview: str = ''
    air_date: str = ''
    vote_average: float = 0.0
    cast: list[Credit] = field(default_factory=list)
    guest_stars: list[Credit] = field(default_factory=list)

    def all_cast(self) -> list[Credit]:
        """Regular cast followed by guest stars, without repeating a person."""
        seen = set()
        people = []
        for person in self.cast + self.guest_stars:
            if person.id in seen:
                continue
            seen.add(person.id)
            people.append(person)
        return people


@dataclass
class CollectionDetails:
    id: int
    name: str
    overview: str = ''
    parts: list[int] = field(default_factory=list)



def _require_id(data: dict, what: str) -> int:
    if not isinstance(data, dict) or not data.get('id'):
        raise ProviderError(f'malformed {what} response: missing id')
    try:
        return int(data['id'])
    except (TypeError, ValueError) as e:
        raise ProviderError(f'malformed {what} response: id {data.get("id")!r}') from e


def normalize_genres(items: list) -> list[Genre]:
    return [Genre(int(g['id']), g.get('name') or '') for g in items or [] if g.get('id')]


def normalize_credits(items: list) -> list[Credit]:
    return [Credit(int(c['id']), c.get('name') or '') for c in items or [] if c.get('id')]


def parse_search_results(data: dict) -> list[SearchResult]:
    return [
        SearchResult(
            id=int(item['id']),
            title=item.get('title') or item.get('name') or '',
            release_date=item.get('release_date') or item.get('first_air_date')
        )
        for item in data.get('results', [])
        if item.get('id')
    ]


def parse_movie(data: dict) -> MovieDetails:
    movie_id = _require_id(data, 'movie')
    collection = data.get('belongs_to_collection') or {}
    return MovieDetails(
        id=movie_id,
        title=data.get('title') or data.get('original_title') or '',
        overview=data.get('overview') or '',
        release_date=data.get('release_date') or '',
        vote_average=float(data.get('vote_average') or 0),
        adult=bool(data.get('adult')),
        genres=normalize_genres(data.get('genres')),
        cast=normalize_credits((data.get('credits') or {}).get('cast')),
        collection_id=int(collection['id']) if collection.get('id') else None,
        collection_name=collection.get('name'),
    )


def parse_series(data: dict) -> SeriesDetails:
    series_id = _require_id(data, 'series')
    return SeriesDetails(
        id=series_id,
        name=data.get('name') or data.get('original_name') or '',
        overview=data.get('overview') or '',
        first_air_date=data.get('first_air_date') or '',
        vote_average=float(data.get('vote_average') or 0),
        adult=bool(data.get('adult')),
        genres=normalize_genres(data.get('genres')),
        cast=normalize_credits((data.get('credits') or {}).get('cast')),
        seasons=[
            SeasonSummary(int(s.get('season_number') or 0), int(s.get('episode_count') or 0))
            for s in data.get('seasons', [])
        ],
    )


def parse_episode(data: dict) -> EpisodeDetails:
    episode_id = _require_id(data, 'episode')
    credits = data.get('credits') or {}
    return EpisodeDetails(
        id=episode_id,
        name=data.get('name') or '',
        season_number=int(data.get('season_number') or 0),
        episode_number=int(data.get('episode_number') or 0),
        overview=data.get('overview') or '',
        air_date=data.get('air_date') or '',
        vote_average=float(data.get('vote_average') or 0),
        cast=normalize_credits(credits.get('cast')),
        guest_stars=normalize_credits(credits.get('guest_stars') or data.get('guest_stars')),
    )


def parse_collection(data: dict) -> CollectionDetails:
    collection_id = _require_id(data, 'collection')
    return CollectionDetails(
        id=collection_id,
        name=data.get('name') or '',
        overview=data.get('overview') or '',
        parts=[int(part['id']) for part in data.get('parts', []) if part.get('id')],
    )




class TMDBClient:
    BASE_URL = 'https://api.themoviedb.org/3'
    TRANSIENT_STATUS = (429, 500, 502, 503, 504)

    def __init__(self, api_key: str = None, language: str = 'en-US', retries: int = 2, backoff: float = 1.0, timeout: float = 10.0, request_delay: float = 0.25, session: requests.Session = None):
        self.api_key = api_key or os.getenv('API_KEY')
        if not self.api_key:
            raise ValueError('TMDB api key missing (API_KEY)')

        self.language = language
        self.retries = retries
        self.backoff = backoff
        self.timeout = timeout
        self.request_delay = request_delay
        self.session = session or requests.Session()

        # v4 read access tokens are JWTs, v3 keys go in the query string
        self._is_bearer = self.api_key.startswith('eyJ')
        self.headers = {"accept": "application/json"}
        if self._is_bearer:
            self.headers["Authorization"] = f"Bearer {self.api_key}"


    def _request(self, endpoint: str, params: dict = None) -> dict:
        """method to make GET requests to the TMDB API."""
        url = f"{self.BASE_URL}{endpoint}"
        all_params = {"language": self.language, **(params or {})}
        if not self._is_bearer:
            all_params["api_key"] = self.api_key

        attempt = 0
        while True:
            if self.request_delay:
                time.sleep(self.request_delay)  # rate-limit

            try:
                response = self.session.get(url, headers=self.headers, params=all_params, timeout=self.timeout)
            except (requests.ConnectionError, requests.Timeout) as e:
                if attempt < self.retries:
                    self._wait(attempt, f'{type(e).__name__} for {endpoint}')
                    attempt += 1
                    continue
                logger.error(f"request failed: {e} | URL: {url}", exc_info=True)
                raise ProviderError(f'request failed: {e}') from e
            except requests.RequestException as e:
                logger.error(f"request failed: {e} | URL: {url}", exc_info=True)
                raise ProviderError(f'request failed: {e}') from e

            if response.status_code in self.TRANSIENT_STATUS and attempt < self.retries:
                self._wait(attempt, f'status {response.status_code} for {endpoint}')
                attempt += 1
                continue
            break

        logger.debug(f'response status: {response.status_code} | {endpoint}')
        if response.status_code == 404:
            raise ProviderError(f'not found: {endpoint}', status=404)

        try:
            response.raise_for_status()
        except requests.HTTPError as e:
            logger.error(f"request failed: {e} | URL: {url} | Params: {params}")
            raise ProviderError(f'request failed: {e}', status=response.status_code) from e

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(f'invalid JSON from {endpoint}', status=response.status_code) from e

        if isinstance(data, dict) and data.get('success') is False:
            raise ProviderError(data.get('status_message') or f'not found: {endpoint}', status=404)
        return data


    def _wait(self, attempt: int, reason: str):
        delay = self.backoff * (2 ** attempt)
        logger.warning(f'transient TMDB failure ({reason}), retrying in {delay:.1f}s...')
        time.sleep(delay)


    def search_movie(self, title: str, year: int = None) -> list[SearchResult]:
        """
        Search for a movie by title, optionally narrowed to a release year.
        """
        params = {"query": title, "include_adult": False, "page": 1}
        if year:
            params["year"] = year
        return parse_search_results(self._request("/search/movie", params))


    def search_series(self, title: str, year: int = None) -> list[SearchResult]:
        params = {"query": title, "include_adult": False, "page": 1}
        if year:
            params["first_air_date_year"] = year
        return parse_search_results(self._request("/search/tv", params))


    def get_movie(self, movie_id: int) -> MovieDetails:
        return parse_movie(self._request(f"/movie/{movie_id}", {"append_to_response": "credits"}))


    def get_series(self, series_id: int) -> SeriesDetails:
        return parse_series(self._request(f"/tv/{series_id}", {"append_to_response": "credits"}))


    def get_episode(self, series_id: int, season_number: int, episode_number: int) -> EpisodeDetails:
        """
        Episode details with its credits (cast and guest stars).
        """
        return parse_episode(self._request(
            f"/tv/{series_id}/season/{season_number}/episode/{episode_number}",
            {"append_to_response": "credits"}
        ))


    def get_collection(self, collection_id: int) -> CollectionDetails:
        return parse_collection(self._request(f"/collection/{collection_id}"))


    def find_movie(self, title: str, year: int = None, tmdb_id: int = None):
        """
        Movie details by id hint when given, else the first search hit. None when nothing matches.
        """
        if tmdb_id:
            return self.get_movie(tmdb_id)

        results = self.search_movie(title, year)
        if not results:
            logger.warning(f'no results found for: "{title}" ({year}).')
            return None

        titles = ' | '.join([f'"{item.title}" ({item.id})' for item in results[:5]])
        logger.info(f'Found {len(results)} results: {titles}')
        return self.get_movie(results[0].id)


    def find_series(self, title: str, year: int = None, tmdb_id: int = None):
        if tmdb_id:
            return self.get_series(tmdb_id)

        results = self.search_series(title, year)
        if not results:
            logger.warning(f'no results found for: "{title}" ({year}).')
            return None

        titles = ' | '.join([f'"{item.title}" ({item.id})' for item in results[:5]])
        logger.info(f'Found {len(results)} results: {titles}')
        return self.get_series(results[0].id)
