"""
Inkwell Database Models
SQLAlchemy ORM models for devices, playlists, plugins and the render pipeline
"""
from datetime import datetime, timedelta, timezone
from flask_sqlalchemy import SQLAlchemy
from werkzeug.security import generate_password_hash, check_password_hash
import secrets
import enum
import json

db = SQLAlchemy()


def utcnow():
    """Naive UTC timestamp, the form every DateTime column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class LifecycleState(enum.Enum):
    """Lifecycle of plugin definitions and instances"""
    ACTIVE = 'active'                    # Scheduled and rendered
    DEACTIVATED = 'deactivated'          # Kept, but never scheduled or rendered
    PURGE_SCHEDULED = 'purge_scheduled'  # Being deleted, treat as gone


class DataStrategy(enum.Enum):
    """How a plugin instance receives its data"""
    WEBHOOK = 'webhook'
    POLLING = 'polling'
    STATIC = 'static'


# Render job statuses
JOB_PENDING = 'pending'
JOB_PROCESSING = 'processing'
JOB_COMPLETED = 'completed'
JOB_FAILED = 'failed'
JOB_CANCELLED = 'cancelled'

# Supported refresh rates in seconds
REFRESH_RATES = (60, 300, 600, 900, 1800, 3600, 7200, 14400, 21600, 28800, 43200, 86400)


# ============================================================================
# DEVICES & PLAYLISTS
# ============================================================================

class Device(db.Model):
    """E-ink display device model"""
    __tablename__ = 'devices'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    serial = db.Column(db.String(100), unique=True, nullable=False, index=True)
    api_key_hash = db.Column(db.String(255), nullable=False)
    registered_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    last_seen = db.Column(db.DateTime, nullable=True)
    is_active = db.Column(db.Boolean, default=True)

    # Display
    refresh_rate = db.Column(db.Integer, default=1800, nullable=False)  # Seconds between polls
    screen_width = db.Column(db.Integer, default=800, nullable=False)
    screen_height = db.Column(db.Integer, default=480, nullable=False)
    bit_depth = db.Column(db.Integer, default=1, nullable=False)
    last_playlist_index = db.Column(db.Integer, default=-1, nullable=False)  # Rotation cursor

    # Relationships
    playlists = db.relationship('Playlist', backref='device', lazy='dynamic', cascade='all, delete-orphan')

    @staticmethod
    def generate_api_key():
        """Generate a secure random API key"""
        return secrets.token_urlsafe(32)

    @staticmethod
    def hash_api_key(api_key):
        """Hash API key for secure storage"""
        return generate_password_hash(api_key)

    def verify_api_key(self, api_key):
        """Verify API key against stored hash"""
        return check_password_hash(self.api_key_hash, api_key)

    @property
    def is_online(self):
        """Check if device polled within two refresh periods"""
        if not self.last_seen:
            return False
        return utcnow() - self.last_seen < timedelta(seconds=self.refresh_rate * 2)

    def __repr__(self):
        return f'<Device {self.name} ({self.serial})>'


class Playlist(db.Model):
    """Ordered list of plugin instances shown on a device"""
    __tablename__ = 'playlists'

    id = db.Column(db.Integer, primary_key=True)
    device_id = db.Column(db.Integer, db.ForeignKey('devices.id', ondelete='CASCADE'), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    is_default = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    items = db.relationship('PlaylistItem', backref='playlist', lazy='dynamic',
                            cascade='all, delete-orphan', order_by='PlaylistItem.order_index')

    # One default playlist per device
    __table_args__ = (
        db.Index('uix_device_default_playlist', 'device_id', unique=True,
                 sqlite_where=db.text('is_default = 1'),
                 postgresql_where=db.text('is_default')),
    )

    def __repr__(self):
        return f'<Playlist {self.name} Device:{self.device_id}>'


class PlaylistItem(db.Model):
    """Plugin instance placed in a playlist, with ordering and display flags"""
    __tablename__ = 'playlist_items'

    id = db.Column(db.Integer, primary_key=True)
    playlist_id = db.Column(db.Integer, db.ForeignKey('playlists.id', ondelete='CASCADE'), nullable=False)
    plugin_instance_id = db.Column(db.Integer, db.ForeignKey('plugin_instances.id', ondelete='CASCADE'),
                                   nullable=False, index=True)
    order_index = db.Column(db.Integer, nullable=False)  # 1..N, dense
    is_visible = db.Column(db.Boolean, default=True, nullable=False)
    importance = db.Column(db.Boolean, default=False, nullable=False)
    duration_override = db.Column(db.Integer, nullable=True)  # Seconds, overrides device refresh rate
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    # Relationships
    plugin_instance = db.relationship('PluginInstance', backref=db.backref('playlist_items', lazy='dynamic', passive_deletes=True))
    schedules = db.relationship('Schedule', backref='playlist_item', lazy='select',
                                cascade='all, delete-orphan', order_by='Schedule.id')

    # Unique constraint: one item per position
    __table_args__ = (
        db.UniqueConstraint('playlist_id', 'order_index', name='unique_playlist_order'),
    )

    def __repr__(self):
        return f'<PlaylistItem Playlist:{self.playlist_id} Instance:{self.plugin_instance_id} Pos:{self.order_index}>'


class Schedule(db.Model):
    """Recurring weekly visibility window for a playlist item"""
    __tablename__ = 'schedules'

    id = db.Column(db.Integer, primary_key=True)
    playlist_item_id = db.Column(db.Integer, db.ForeignKey('playlist_items.id', ondelete='CASCADE'),
                                 nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False, default='')

    # Bit k set = weekday k, 0=Sunday ... 6=Saturday
    day_mask = db.Column(db.Integer, default=127, nullable=False)

    # Local wall clock "HH:MM:SS"; end < start wraps midnight
    start_time = db.Column(db.String(8), nullable=False)
    end_time = db.Column(db.String(8), nullable=False)
    timezone = db.Column(db.String(64), default='UTC', nullable=False)

    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    @property
    def days_display(self):
        """Get human-readable day names"""
        day_names = ['Sun', 'Mon', 'Tue', 'Wed', 'Thu', 'Fri', 'Sat']
        if self.day_mask == 127:
            return 'Every day'
        if self.day_mask == 0b0111110:
            return 'Weekdays'
        if self.day_mask == 0b1000001:
            return 'Weekends'
        return ', '.join(name for bit, name in enumerate(day_names) if self.day_mask & (1 << bit))

    @property
    def is_overnight(self):
        return self.end_time < self.start_time

    def __repr__(self):
        return f'<Schedule {self.name}: {self.start_time}-{self.end_time} {self.timezone}>'


# ============================================================================
# PLUGINS
# ============================================================================

class PluginDefinition(db.Model):
    """Plugin type: template, data strategy and configuration schema"""
    __tablename__ = 'plugin_definitions'

    id = db.Column(db.Integer, primary_key=True)
    plugin_type = db.Column(db.String(20), default='private', nullable=False)  # system, private, external
    identifier = db.Column(db.String(100), unique=True, nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    owner_id = db.Column(db.Integer, nullable=True)  # NULL for system plugins
    markup = db.Column(db.Text, nullable=False, default='')  # Template handed to the renderer
    data_strategy = db.Column(db.Enum(DataStrategy), default=DataStrategy.WEBHOOK, nullable=False)
    polling_config = db.Column(db.JSON, nullable=True)
    sample_data = db.Column(db.JSON, nullable=True)
    schema_version = db.Column(db.Integer, default=1, nullable=False)
    state = db.Column(db.Enum(LifecycleState), default=LifecycleState.ACTIVE, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    instances = db.relationship('PluginInstance', back_populates='definition', lazy='dynamic')

    @property
    def is_active(self):
        return self.state == LifecycleState.ACTIVE

    def __repr__(self):
        return f'<PluginDefinition {self.identifier} v{self.schema_version}>'


class PluginInstance(db.Model):
    """A user's configured copy of a plugin definition"""
    __tablename__ = 'plugin_instances'

    id = db.Column(db.Integer, primary_key=True)
    definition_id = db.Column(db.Integer, db.ForeignKey('plugin_definitions.id', ondelete='CASCADE'),
                              nullable=False, index=True)
    owner_id = db.Column(db.Integer, nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    settings = db.Column(db.JSON, nullable=True)
    refresh_interval = db.Column(db.Integer, default=3600, nullable=False)  # Seconds
    state = db.Column(db.Enum(LifecycleState), default=LifecycleState.ACTIVE, nullable=False)
    last_schema_version = db.Column(db.Integer, default=1, nullable=False)
    needs_config_update = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    definition = db.relationship('PluginDefinition', back_populates='instances')
    data = db.relationship('PluginData', backref='plugin_instance', uselist=False, cascade='all, delete-orphan')

    @property
    def is_active(self):
        return self.state == LifecycleState.ACTIVE

    @property
    def is_schedulable(self):
        """Active, configured, and owned by an active definition"""
        return (self.is_active and not self.needs_config_update
                and self.definition is not None and self.definition.is_active)

    def __repr__(self):
        return f'<PluginInstance {self.name} ({self.id})>'


class PluginData(db.Model):
    """Merge record: canonical data snapshot of one plugin instance"""
    __tablename__ = 'plugin_data'

    id = db.Column(db.Integer, primary_key=True)
    plugin_instance_id = db.Column(db.Integer, db.ForeignKey('plugin_instances.id', ondelete='CASCADE'),
                                   unique=True, nullable=False)
    merged_data = db.Column(db.JSON, nullable=False, default=dict)
    raw_data = db.Column(db.JSON, nullable=True)  # Last inbound payload
    merge_strategy = db.Column(db.String(20), default='default', nullable=False)
    received_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    content_type = db.Column(db.String(100), nullable=True)
    content_size = db.Column(db.Integer, nullable=True)
    source_ip = db.Column(db.String(45), nullable=True)

    def __repr__(self):
        return f'<PluginData Instance:{self.plugin_instance_id} {self.merge_strategy}>'


# ============================================================================
# RENDER PIPELINE
# ============================================================================

class RenderJob(db.Model):
    """Render queue entry"""
    __tablename__ = 'render_queue'

    id = db.Column(db.Integer, primary_key=True)
    plugin_instance_id = db.Column(db.Integer, db.ForeignKey('plugin_instances.id', ondelete='CASCADE'),
                                   nullable=False, index=True)
    priority = db.Column(db.Integer, default=0, nullable=False)  # Higher runs sooner
    scheduled_for = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
    status = db.Column(db.String(20), default=JOB_PENDING, nullable=False, index=True)  # pending, processing, completed, failed, cancelled
    independent_render = db.Column(db.Boolean, default=False, nullable=False)  # No follow-up scheduling
    attempts = db.Column(db.Integer, default=0, nullable=False)
    last_attempt = db.Column(db.DateTime, nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    plugin_instance = db.relationship('PluginInstance', backref=db.backref('render_jobs', lazy='dynamic', passive_deletes=True))

    def to_dict(self):
        return {
            'id': self.id,
            'plugin_instance_id': self.plugin_instance_id,
            'priority': self.priority,
            'scheduled_for': self.scheduled_for.isoformat() if self.scheduled_for else None,
            'status': self.status,
            'independent_render': self.independent_render,
            'attempts': self.attempts,
            'last_attempt': self.last_attempt.isoformat() if self.last_attempt else None,
            'error_message': self.error_message,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f'<RenderJob {self.id} Instance:{self.plugin_instance_id} - {self.status}>'


class RenderedContent(db.Model):
    """Last rendered bitmap for an (instance, device) pair"""
    __tablename__ = 'rendered_content'

    id = db.Column(db.Integer, primary_key=True)
    plugin_instance_id = db.Column(db.Integer, db.ForeignKey('plugin_instances.id', ondelete='CASCADE'),
                                   nullable=False, index=True)
    device_id = db.Column(db.Integer, db.ForeignKey('devices.id', ondelete='CASCADE'), nullable=True)  # NULL = any device
    width = db.Column(db.Integer, nullable=False)
    height = db.Column(db.Integer, nullable=False)
    bit_depth = db.Column(db.Integer, nullable=False)
    image_path = db.Column(db.String(255), nullable=False)  # Storage handle
    file_size = db.Column(db.Integer, nullable=False, default=0)
    content_hash = db.Column(db.String(64), nullable=False, index=True)  # SHA256 hash
    previous_hash = db.Column(db.String(64), nullable=True)
    render_attempts = db.Column(db.Integer, default=0, nullable=False)  # Failures since last success
    rendered_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    last_checked_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    # Relationships
    plugin_instance = db.relationship('PluginInstance', backref=db.backref('rendered_content', lazy='dynamic', passive_deletes=True))
    device = db.relationship('Device', backref=db.backref('rendered_content', lazy='dynamic', passive_deletes=True))

    __table_args__ = (
        db.UniqueConstraint('plugin_instance_id', 'device_id', name='uix_rendered_instance_device'),
    )

    def __repr__(self):
        return f'<RenderedContent Instance:{self.plugin_instance_id} Device:{self.device_id} {self.content_hash[:8]}>'


class SystemSetting(db.Model):
    """Runtime-tunable key/value settings"""
    __tablename__ = 'system_settings'

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(100), unique=True, nullable=False, index=True)
    value = db.Column(db.Text, nullable=True)
    value_type = db.Column(db.String(20), default='string')  # string, int, bool, json
    description = db.Column(db.Text, nullable=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    def get_typed_value(self):
        """Return value with proper type conversion"""
        if self.value_type == 'int':
            return int(self.value) if self.value else 0
        elif self.value_type == 'bool':
            return self.value.lower() == 'true' if self.value else False
        elif self.value_type == 'json':
            return json.loads(self.value) if self.value else {}
        return self.value

    def __repr__(self):
        return f'<SystemSetting {self.key}={self.value}>'
