import logging
import os
import sys
import warnings
import threading
import socket

from dataclasses import asdict
from uuid import uuid4
from flask import Flask, request, jsonify
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from functools import wraps
from waitress import serve
from dotenv import load_dotenv
load_dotenv()

# dir modules
from database_utils import DB, ensure_schema
from duplicates import duplicate_view
from fill_up import fill_up_grouping
from library_manager import SETTINGS_PATH, sync_libraries, create_settings, load_settings, database_path, build_context
from relink import change_external_id, remove_entry
from store import Store, StoreError
from tmdb_client import TMDBClient, ProviderError


logging.basicConfig(
    filename='logs.log',
    encoding='utf-8',
    level=logging.DEBUG,
    format='%(asctime)s - %(levelname)s - %(name)s - %(message)s',
    datefmt='%m/%d/%Y %I:%M:%S %p'
)
logger = logging.getLogger(__name__)



app = Flask(__name__)
app.secret_key = os.getenv('FLASK_KEY')
app.config.update(
    SETTINGS_PATH = SETTINGS_PATH,
    PROVIDER = None, # overrides the TMDB client built from API_KEY
    PROBER = None, # overrides ffprobe
)



warnings.filterwarnings("ignore", category=UserWarning, module="flask_limiter") # supress "Using the in-memory storage for tracking rate limits as no storage"
limiter = Limiter(get_remote_address, app=app, default_limits=[])
tight_rate, default_rate, loose_rate = '30/minute', '60/minute', '120/minute'



jobs = {}  # temp in-memory job store
job_threads = {} # running jobs only
MAX_FINISHED_JOBS = 50
catalog_lock = threading.Lock() # one catalog operation at a time
cancel_event = threading.Event()



## HELPERS
## HELPERS
## HELPERS

def current_settings():
    return load_settings(app.config['SETTINGS_PATH'])


def open_store(settings) -> Store:
    store = Store(database_path(settings))
    store.open()
    try:
        ensure_schema(store)
    except StoreError:
        store.close()
        raise
    return store


def current_provider(settings):
    if app.config.get('PROVIDER') is not None:
        return app.config['PROVIDER']
    if not os.getenv('API_KEY'):
        return None
    return TMDBClient(language=settings.get('language') or 'en-US')


def catalog_operation(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not catalog_lock.acquire(blocking=False):
            return jsonify({'error': 'busy'}), 409
        try:
            return f(*args, **kwargs)
        finally:
            catalog_lock.release()
    return decorated_function


def prune_jobs():
    finished = [job_id for job_id, job in jobs.items() if job['status'] != 'running']
    for job_id in finished[:max(0, len(finished) - MAX_FINISHED_JOBS)]:
        del jobs[job_id]


def start_job(kind: str, target, *args):
    """
    Run target(*args) on a background thread while holding the catalog lock.
    Returns the job id, or None when another operation holds the lock.
    """
    if not catalog_lock.acquire(blocking=False):
        return None

    prune_jobs()
    job_id = str(uuid4())
    jobs[job_id] = {'id': job_id, 'kind': kind, 'status': 'running', 'result': None, 'error': None}

    def run():
        outcome = {'status': 'failed'}
        try:
            outcome = {'status': 'done', 'result': target(*args)}
        except Exception as e:
            logger.error(f'job {job_id} ({kind}) failed, exception {e}.', exc_info=True)
            outcome['error'] = str(e)
        finally:
            job_threads.pop(job_id, None)
            catalog_lock.release()
            # published last: a finished status means the lock is free again
            jobs[job_id].update(outcome)

    thread = threading.Thread(target=run, name=f'{kind}-{job_id}', daemon=True)
    job_threads[job_id] = thread
    thread.start()
    return job_id


def request_int(data: dict, key: str):
    value = data.get(key)
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def entry_to_json(entry) -> dict:
    data = asdict(entry)
    data['file_size_mb'] = entry.file_size_mb
    return data



## JOBS
## JOBS
## JOBS

def run_rescan(settings):
    store = open_store(settings)
    try:
        context = build_context(settings, provider=app.config.get('PROVIDER'), prober=app.config.get('PROBER'), cancel=cancel_event)
        report = sync_libraries(store, context)
    finally:
        store.close()
    return asdict(report)


def run_fill_up(settings, grouping_id: int, provider):
    store = open_store(settings)
    try:
        created = fill_up_grouping(store, grouping_id, provider, settings.get('default_extension') or 'mkv')
    finally:
        store.close()
    return {'created': created}


@app.route('/status/v1/<job_id>', methods=['GET'])
def check_job_status(job_id):
    job = jobs.get(job_id)
    if not job:
        return jsonify({'error': 'job not found'}), 404
    return jsonify(job)


@app.route('/rescan', methods=['POST'])
@limiter.limit('1 per 10 minutes')
def rescan():
    try:
        settings = current_settings()
    except Exception as e:
        logger.error(f'failed to load settings, exception {e}.', exc_info=True)
        return jsonify({'error': 'internal error.'}), 500

    cancel_event.clear()
    job_id = start_job('rescan', run_rescan, settings)
    if not job_id:
        return jsonify({'error': 'busy'}), 409
    return jsonify({"message": "Rescan started", "job_id": job_id}), 202


@app.route('/rescan/cancel', methods=['POST'])
@limiter.limit(tight_rate)
def rescan_cancel():
    cancel_event.set()
    logger.info('rescan cancellation requested.')
    return jsonify({"message": "Cancellation requested"}), 202


@app.errorhandler(429)
def ratelimit_handler(e):
    return jsonify({'error': 'rate limit exceeded'}), 429





## API CONTENT Endpoints
## API CONTENT Endpoints
## API CONTENT Endpoints

@app.route('/content/v1/catalog')
@limiter.limit(loose_rate)
@catalog_operation
def get_catalog():
    media_type = request.args.get('media_type')
    duplicates = request.args.get('duplicates') in ('1', 'true', 'yes')
    try:
        with open_store(current_settings()) as store:
            catalog = DB(store).fetch_catalog(media_type)
    except Exception as e:
        logger.error(f'failed to fetch catalog, exception {e}.', exc_info=True)
        return jsonify({'error': 'internal error.'}), 500

    return jsonify([entry_to_json(entry) for entry in duplicate_view(catalog, duplicates)])


@app.route('/content/v1/groupings')
@limiter.limit(loose_rate)
@catalog_operation
def get_groupings():
    try:
        with open_store(current_settings()) as store:
            groupings = DB(store).fetch_groupings()
    except Exception as e:
        logger.error(f'failed to fetch groupings, exception {e}.', exc_info=True)
        return jsonify({'error': 'internal error.'}), 500

    return jsonify([asdict(g) for g in groupings])


@app.route('/content/v1/r', methods=['POST'])
@limiter.limit(default_rate)
@catalog_operation
def relink_video():
    data = request.get_json(silent=True) or {}
    video_id = request_int(data, 'video_id')
    tmdb_id = request_int(data, 'tmdb_id')
    if video_id is None or tmdb_id is None or tmdb_id < 0:
        return jsonify({'error': 'invalid data.'}), 400

    try:
        settings = current_settings()
        with open_store(settings) as store:
            state = change_external_id(store, video_id, tmdb_id, current_provider(settings))
    except LookupError:
        return jsonify({'error': 'video not found'}), 404
    except (StoreError, ProviderError) as e:
        logger.error(f'failed to relink video {video_id} to {tmdb_id}, exception {e}.', exc_info=True)
        return jsonify({'error': 'internal error.'}), 500

    return jsonify({'video_id': video_id, 'state': state.value})


@app.route('/content/v1/d', methods=['POST'])
@limiter.limit(default_rate)
@catalog_operation
def delete_video():
    data = request.get_json(silent=True) or {}
    video_id = request_int(data, 'video_id')
    if video_id is None:
        return jsonify({'error': 'invalid data.'}), 400

    try:
        with open_store(current_settings()) as store:
            remove_entry(store, video_id)
    except LookupError:
        return jsonify({'error': 'video not found'}), 404
    except StoreError as e:
        logger.error(f'failed to delete video {video_id}, exception {e}.', exc_info=True)
        return jsonify({'error': 'internal error.'}), 500

    return jsonify({'deleted': video_id})


@app.route('/content/v1/fill', methods=['POST'])
@limiter.limit(tight_rate)
def fill_grouping():
    data = request.get_json(silent=True) or {}
    grouping_id = request_int(data, 'grouping_id')
    if grouping_id is None:
        return jsonify({'error': 'invalid data.'}), 400

    try:
        settings = current_settings()
    except Exception as e:
        logger.error(f'failed to load settings, exception {e}.', exc_info=True)
        return jsonify({'error': 'internal error.'}), 500

    provider = current_provider(settings)
    if provider is None:
        return jsonify({'error': 'missing API_KEY'}), 400

    job_id = start_job('fill', run_fill_up, settings, grouping_id, provider)
    if not job_id:
        return jsonify({'error': 'busy'}), 409
    return jsonify({"message": "Fill-up started", "job_id": job_id}), 202





if __name__ == "__main__":
    if not app.secret_key:
        logger.critical("Missing FLASK_KEY in environment. Cannot start the app.")
        sys.exit(1)

    create_settings()
    settings = load_settings()
    open_store(settings).close() # creates the schema

    start_job('rescan', run_rescan, settings)

    logger.info(f'[ APP ] running... at localhost:8000, 127.0.0.1:8000, {socket.gethostbyname(socket.gethostname())}:8000')
    print(f'\n[ APP ] running... at localhost:8000, 127.0.0.1:8000, {socket.gethostbyname(socket.gethostname())}:8000')
    serve(
        app,
        ident=None,
        host="0.0.0.0",
        port=8000,
        threads=8,
        connection_limit=100,
        channel_timeout=120,
    )
