"""Media uploads into named buckets under the upload folder.

Each bucket is a directory below ``UPLOAD_FOLDER`` and is served from
``STORAGE_PUBLIC_URL``. Size and type policies are checked before anything
touches the disk.
"""
import logging
import os
import secrets
import sqlite3
import time
from collections import namedtuple

from flask import current_app
from werkzeug.utils import secure_filename

from db import query_db, execute_db, now_iso
from errors import UploadRejected

logger = logging.getLogger(__name__)

MB = 1024 * 1024

IMAGE_TYPES = ('image/jpeg', 'image/png', 'image/webp')
VIDEO_TYPES = ('video/mp4',)

BucketPolicy = namedtuple('BucketPolicy', 'name max_size allowed_types entity_type public')

BUCKETS = {
    'avatars': BucketPolicy('avatars', 10 * MB, IMAGE_TYPES, 'profile_avatar', True),
    'posts': BucketPolicy('post-images', 40 * MB, IMAGE_TYPES, 'post_image', True),
    'stories': BucketPolicy('stories', 50 * MB, IMAGE_TYPES + VIDEO_TYPES, 'story_media', True),
    'chat': BucketPolicy('chat-media', 25 * MB, IMAGE_TYPES + VIDEO_TYPES + ('application/pdf',), 'chat_media', False),
    'trips': BucketPolicy('trip-images', 10 * MB, IMAGE_TYPES, 'trip_image', True),
    'bikes': BucketPolicy('bike-images', 10 * MB, IMAGE_TYPES, 'bike_image', True),
}

_BY_NAME = {p.name: p for p in BUCKETS.values()}

UploadResult = namedtuple('UploadResult', 'url path')


def get_policy(bucket):
    policy = BUCKETS.get(bucket) or _BY_NAME.get(bucket)
    if policy is None:
        raise UploadRejected(f'Unknown bucket: {bucket}')
    return policy


def format_file_size(size):
    if size <= 0:
        return '0 Bytes'
    units = ('Bytes', 'KB', 'MB', 'GB')
    i = 0
    value = float(size)
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    return f'{round(value, 2):g} {units[i]}'


def is_valid_image(content_type):
    return content_type in IMAGE_TYPES


def is_valid_video(content_type):
    return content_type in VIDEO_TYPES


def validate_upload(policy, size, content_type):
    if size > policy.max_size:
        raise UploadRejected(f'File size exceeds {format_file_size(policy.max_size)} limit')
    if content_type not in policy.allowed_types:
        raise UploadRejected(f'File type {content_type} is not allowed')


def _bucket_dir(policy):
    return os.path.join(current_app.config['UPLOAD_FOLDER'], policy.name)


def _public_url(policy, path):
    base = current_app.config['STORAGE_PUBLIC_URL'].rstrip('/')
    return f'{base}/{policy.name}/{path}'


def _unique_name(filename):
    safe = secure_filename(filename or '')
    ext = safe.rsplit('.', 1)[1].lower() if '.' in safe else 'bin'
    return f'{int(time.time() * 1000)}_{secrets.token_hex(4)}.{ext}'


def _save_metadata(user_id, policy, stored_name, filename, size, content_type, path, url):
    try:
        execute_db('''
            INSERT INTO media_files
            (user_id, filename, original_name, file_size, mime_type, storage_path, public_url,
             bucket, entity_type, is_public, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (user_id, stored_name, filename, size, content_type, path, url,
              policy.name, policy.entity_type, 1 if policy.public else 0, now_iso()))
    except sqlite3.Error as e:
        logger.error('Error saving media metadata: %s', e)


def upload_file(data, filename, content_type, bucket, user_id=None, folder=None):
    """Store ``data`` in ``bucket`` and return its public URL and bucket path."""
    policy = get_policy(bucket)
    validate_upload(policy, len(data), content_type)

    stored_name = _unique_name(filename)
    prefix = secure_filename(str(folder or user_id or 'uploads')) or 'uploads'
    path = f'{prefix}/{stored_name}'

    dest_dir = os.path.join(_bucket_dir(policy), prefix)
    os.makedirs(dest_dir, exist_ok=True)
    dest = os.path.join(dest_dir, stored_name)
    # never overwrite an existing object
    with open(dest, 'xb') as f:
        f.write(data)

    url = _public_url(policy, path)
    logger.info('Uploaded %s to %s (%s)', filename, policy.name, format_file_size(len(data)))
    if user_id is not None:
        _save_metadata(user_id, policy, stored_name, filename, len(data), content_type, path, url)
    return UploadResult(url, path)


def upload_avatar(user_id, data, filename, content_type):
    return upload_file(data, filename, content_type, 'avatars', user_id=user_id)


def upload_post_image(user_id, data, filename, content_type):
    return upload_file(data, filename, content_type, 'posts', user_id=user_id)


def upload_story_media(user_id, data, filename, content_type):
    return upload_file(data, filename, content_type, 'stories', user_id=user_id)


def upload_chat_media(user_id, room_id, data, filename, content_type):
    return upload_file(data, filename, content_type, 'chat', user_id=user_id, folder=f'room_{room_id}')


def upload_trip_image(user_id, trip_id, data, filename, content_type):
    return upload_file(data, filename, content_type, 'trips', user_id=user_id, folder=f'trip_{trip_id}')


def upload_bike_image(user_id, data, filename, content_type):
    return upload_file(data, filename, content_type, 'bikes', user_id=user_id)


def delete_file(bucket, path):
    policy = get_policy(bucket)
    root = os.path.abspath(_bucket_dir(policy))
    target = os.path.abspath(os.path.join(root, path))
    if not target.startswith(root + os.sep):
        logger.warning('Refusing to delete outside bucket %s: %s', policy.name, path)
        return False
    try:
        os.remove(target)
    except OSError as e:
        logger.error('Delete error: %s', e)
        return False
    query_db('DELETE FROM media_files WHERE bucket = ? AND storage_path = ?', (policy.name, path))
    return True


def get_user_media_files(user_id, entity_type=None):
    if entity_type:
        rows = query_db('''
            SELECT * FROM media_files WHERE user_id = ? AND entity_type = ?
            ORDER BY created_at DESC, id DESC
        ''', (user_id, entity_type))
    else:
        rows = query_db('SELECT * FROM media_files WHERE user_id = ? ORDER BY created_at DESC, id DESC', (user_id,))
    return [dict(r) for r in rows]
