"""
Initialize the database tables, optionally seeding a demo user and asset
"""
import sys

from server import app
from models import db, User, Asset


def init_database(seed_email=None):
    """Create all database tables"""
    with app.app_context():
        db.create_all()
        print("✅ Database tables created successfully!")

        if not seed_email:
            return

        user = User.query.filter_by(email=seed_email.lower()).first()
        if user is None:
            user = User(email=seed_email.lower())
            db.session.add(user)
            db.session.flush()
            print(f"✅ Created user {user.email}")
        else:
            print(f"ℹ️  User {user.email} already exists, skipping.")

        if user.assets.count() == 0:
            asset = Asset(
                owner_user_id=user.id,
                platform='google_workspace',
                external_id='demo-file-id',
                name='Demo shared document',
                owner_email=user.email,
            )
            db.session.add(asset)
            print(f"✅ Seeded demo asset {asset.external_id}")

        db.session.commit()


if __name__ == '__main__':
    init_database(sys.argv[1] if len(sys.argv) > 1 else None)
