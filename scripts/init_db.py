"""Create the schema and seed the default user against DATABASE_URL"""
import logging
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import create_app, init_db, setup_logging  # noqa: E402


if __name__ == '__main__':
    setup_logging(logging.INFO)
    app = create_app()
    init_db(app)
    with app.app_context():
        app.extensions['persistence'].shutdown()
