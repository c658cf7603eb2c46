"""
Settings routes - Google Drive/Sheets OAuth and AWS S3 configuration.
"""

import logging
from flask import Blueprint, jsonify, request

from dumpwarden import db
from dumpwarden.models import AWSSettings, GoogleSettings
from dumpwarden.utils.crypto import encrypt_optional
from dumpwarden.utils.google_oauth import GoogleOAuthClient, get_google_settings


bp = Blueprint('settings', __name__, url_prefix='/api')
logger = logging.getLogger(__name__)


@bp.route('/settings/google', methods=['GET'])
def get_google_config():
    """
    Get Google settings (secrets and tokens are not returned).
    """
    settings = get_google_settings()

    if not settings:
        return jsonify({
            'configured': False,
            'authenticated': False,
            'client_id': None,
            'sheet_id': None,
            'drive_folder': None
        })

    return jsonify({
        'configured': settings.is_configured,
        'authenticated': settings.is_authenticated,
        'client_id': settings.client_id,
        'has_client_secret': bool(settings.client_secret_encrypted),
        'sheet_id': settings.sheet_id,
        'drive_folder': settings.drive_folder,
        'token_expiry': settings.token_expiry.isoformat() if settings.token_expiry else None,
        'updated_at': settings.updated_at.isoformat() if settings.updated_at else None
    })


@bp.route('/settings/google', methods=['POST'])
def update_google_config():
    """
    Update Google settings.

    Request body:
        - client_id: OAuth client id (required)
        - client_secret: OAuth client secret (required on first save)
        - sheet_id: Spreadsheet id for the audit log (optional)
        - drive_folder: Drive folder id for uploads (optional)
    """
    data = request.get_json(silent=True) or {}

    if not data.get('client_id'):
        return jsonify({'error': 'client_id is required'}), 400

    settings = get_google_settings()
    if settings is None:
        if not data.get('client_secret'):
            return jsonify({'error': 'client_secret is required'}), 400
        settings = GoogleSettings()
        db.session.add(settings)

    settings.client_id = data['client_id']
    if data.get('client_secret'):
        settings.client_secret_encrypted = encrypt_optional(data['client_secret'])
    if 'sheet_id' in data:
        settings.sheet_id = data['sheet_id'] or None
    if 'drive_folder' in data:
        settings.drive_folder = data['drive_folder'] or None

    db.session.commit()
    return jsonify({'message': 'Google settings updated successfully'})


@bp.route('/auth/google/url', methods=['GET'])
def google_auth_url():
    return jsonify({'url': GoogleOAuthClient().get_auth_url()})


@bp.route('/auth/google/callback', methods=['GET'])
def google_auth_callback():
    """OAuth redirect target: exchanges the authorization code for tokens."""
    error = request.args.get('error')
    if error:
        return jsonify({'success': False, 'error': f'Authorization failed: {error}'}), 400

    code = request.args.get('code')
    if not code:
        return jsonify({'success': False, 'error': 'Authorization code missing'}), 400

    GoogleOAuthClient().exchange_code(code)
    logger.info("Google account connected")
    return jsonify({'success': True, 'message': 'Google account connected successfully'})


@bp.route('/auth/google/status', methods=['GET'])
def google_auth_status():
    settings = get_google_settings()
    return jsonify({
        'configured': bool(settings and settings.is_configured),
        'authenticated': bool(settings and settings.is_authenticated)
    })


@bp.route('/settings/aws', methods=['GET'])
def get_aws_settings():
    """
    Get AWS settings (credentials are not returned).
    """
    settings = AWSSettings.query.first()

    if not settings:
        return jsonify({
            'configured': False,
            'bucket_name': None,
            'region': None
        })

    return jsonify({
        'configured': True,
        'bucket_name': settings.bucket_name,
        'region': settings.region,
        'has_access_key': bool(settings.access_key_encrypted),
        'has_secret_key': bool(settings.secret_key_encrypted),
        'updated_at': settings.updated_at.isoformat()
    })


@bp.route('/settings/aws', methods=['POST'])
def update_aws_settings():
    """
    Update AWS settings.

    Request body:
        - access_key: AWS access key ID (required)
        - secret_key: AWS secret access key (required)
        - bucket_name: S3 bucket name (required)
        - region: AWS region (required)
    """
    data = request.get_json(silent=True) or {}

    required_fields = ['access_key', 'secret_key', 'bucket_name', 'region']
    for field in required_fields:
        if not data.get(field):
            return jsonify({'error': f'{field} is required'}), 400

    settings = AWSSettings.query.first()

    if settings:
        settings.access_key_encrypted = encrypt_optional(data['access_key'])
        settings.secret_key_encrypted = encrypt_optional(data['secret_key'])
        settings.bucket_name = data['bucket_name']
        settings.region = data['region']
    else:
        settings = AWSSettings(
            access_key_encrypted=encrypt_optional(data['access_key']),
            secret_key_encrypted=encrypt_optional(data['secret_key']),
            bucket_name=data['bucket_name'],
            region=data['region']
        )
        db.session.add(settings)

    db.session.commit()

    return jsonify({'message': 'AWS settings updated successfully'})
