"""
Database Initialization Script
Run this script to create all database tables and seed initial data
"""
import os
import sys
from app import create_app
from models import db, DataStrategy, Device
from utils.playlist_service import PlaylistService
from utils.settings_store import SETTING_DEFAULTS

SAMPLE_MARKUP = '<div class="view"><h1>{{ title }}</h1><p>{{ message }}</p></div>'


def init_database():
    """Initialize database with tables and seed data"""

    app = create_app()

    with app.app_context():
        # Drop all tables (use with caution in production!)
        print("Dropping existing tables...")
        db.drop_all()

        # Create all tables
        print("Creating database tables...")
        db.create_all()

        # Record tunable settings with their defaults
        print("Seeding system settings...")
        settings = app.extensions['settings_store']
        for key in SETTING_DEFAULTS:
            settings.set(key, settings.default_for(key))

        # Create sample data for testing (optional)
        api_key = None
        if os.getenv('FLASK_ENV') == 'development':
            print("Adding sample data for development...")

            api_key = Device.generate_api_key()
            device = Device(
                name='Kitchen Display',
                serial='EINK-001-TEST',
                api_key_hash=Device.hash_api_key(api_key)
            )
            db.session.add(device)
            db.session.commit()

            plugins = app.extensions['plugin_service']
            definition = plugins.create_definition(
                identifier='message-board',
                name='Message Board',
                markup=SAMPLE_MARKUP,
                data_strategy=DataStrategy.WEBHOOK,
                sample_data={'title': 'Hello', 'message': 'Send data to the webhook to update me'},
                plugin_type='system'
            )
            instance = plugins.create_instance(definition.id, owner_id=1, name='Kitchen Messages')
            PlaylistService.add_item(device.id, instance.id, render_queue=app.extensions['render_queue'])

        print("\n" + "="*50)
        print("Database initialized successfully!")
        print("="*50)
        if api_key:
            print(f"\nSample device API key: {api_key}")
            print("Webhook URL: /api/webhooks/1")
        print("="*50 + "\n")


if __name__ == '__main__':
    confirm = input("This will delete all existing data. Continue? (yes/no): ")
    if confirm.lower() == 'yes':
        init_database()
    else:
        print("Database initialization cancelled.")
        sys.exit(0)
