#!/usr/bin/env python3
"""
Governance Workflow Server
Flask API for proposing, approving and executing governance actions on assets
"""

from flask import Flask, jsonify
from flask_cors import CORS
import logging
import os
from pathlib import Path
from datetime import datetime
import secrets

from core.workflow.dispatcher import DEFAULT_STALE_CLAIM_MINUTES
from core.workflow.engine import DEFAULT_PLATFORM_TIMEOUT_SECONDS
from core.workflow.orchestrator import DEFAULT_MAX_CONFLICT_RETRIES

logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)
logger = logging.getLogger(__name__)

app = Flask(__name__)
CORS(app, supports_credentials=True)

# Secret key for sessions (generate a secure one for production)
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', secrets.token_hex(32))

# Database configuration
database_url = os.environ.get('DATABASE_URL', f'sqlite:///{Path(__file__).parent}/governance.db')

# Fix Heroku/Vercel's postgres:// scheme (should be postgresql://)
if database_url and database_url.startswith('postgres://'):
    database_url = database_url.replace('postgres://', 'postgresql://', 1)

# Managed PostgreSQL requires SSL
if database_url and database_url.startswith('postgresql://'):
    if '?' not in database_url:
        database_url += '?sslmode=require'
    elif 'sslmode' not in database_url:
        database_url += '&sslmode=require'

app.config['SQLALCHEMY_DATABASE_URI'] = database_url
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

# PostgreSQL-specific connection pool settings
if database_url and database_url.startswith('postgresql://'):
    app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {
        'pool_size': 5,
        'max_overflow': 10,
        'pool_recycle': 300,  # Recycle connections after 5 minutes
        'pool_pre_ping': True,
        'pool_timeout': 30,
        'connect_args': {
            'connect_timeout': 10,
            'keepalives': 1,
            'keepalives_idle': 30,
            'keepalives_interval': 10,
            'keepalives_count': 5
        }
    }
else:
    # SQLite settings (for local dev)
    app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {
        'pool_pre_ping': True
    }

# Workflow engine tuning
app.config['WORKFLOW_MAX_CONFLICT_RETRIES'] = int(
    os.environ.get('WORKFLOW_MAX_CONFLICT_RETRIES', DEFAULT_MAX_CONFLICT_RETRIES))
app.config['WORKFLOW_STALE_CLAIM_MINUTES'] = int(
    os.environ.get('WORKFLOW_STALE_CLAIM_MINUTES', DEFAULT_STALE_CLAIM_MINUTES))
app.config['WORKFLOW_PLATFORM_TIMEOUT_SECONDS'] = float(
    os.environ.get('WORKFLOW_PLATFORM_TIMEOUT_SECONDS', DEFAULT_PLATFORM_TIMEOUT_SECONDS))

# Import and initialize database
from models import db
db.init_app(app)

# Initialize rate limiter
from rate_limiter import init_limiter
limiter = init_limiter(app)

# Register governance workflow routes
from routes.workflow_routes import register_workflow_routes
register_workflow_routes(app)


@app.route('/api/health', methods=['GET'])
def health_check():
    """Liveness plus a database round-trip"""
    try:
        db.session.execute(db.text('SELECT 1'))
        database = 'ok'
    except Exception as e:
        logger.error('[health] database check failed: %s', e)
        database = 'unavailable'

    return jsonify({
        'status': 'ok' if database == 'ok' else 'degraded',
        'database': database,
        'timestamp': datetime.utcnow().isoformat(),
    }), 200 if database == 'ok' else 503


if __name__ == '__main__':
    print("=" * 60)
    print("Governance Workflow Server")
    print("=" * 60)
    print("Server starting on http://localhost:5000")
    print("=" * 60)

    app.run(host='0.0.0.0', port=5000, debug=True)
