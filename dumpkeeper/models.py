import json
from datetime import datetime
from dumpkeeper import db


class RetentionRun(db.Model):
    """Retention run history and logs"""
    __tablename__ = 'retention_runs'

    id = db.Column(db.Integer, primary_key=True)
    target_name = db.Column(db.String(255), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False)  # success, partial, failed
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    kept_count = db.Column(db.Integer, default=0, nullable=False)
    deleted_count = db.Column(db.Integer, default=0, nullable=False)
    error_count = db.Column(db.Integer, default=0, nullable=False)
    deleted_paths = db.Column(db.Text)  # JSON list of paths
    errors = db.Column(db.Text)  # JSON list of {path, reason}
    error_message = db.Column(db.Text)  # Fatal error, run aborted before deleting
    logs = db.Column(db.Text)  # Detailed execution logs

    def deleted_list(self):
        return json.loads(self.deleted_paths) if self.deleted_paths else []

    def error_list(self):
        return json.loads(self.errors) if self.errors else []

    def __repr__(self):
        return f'<RetentionRun target={self.target_name} status={self.status}>'
