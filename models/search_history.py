from . import db, utcnow


class SearchHistory(db.Model):
    __tablename__ = 'search_history'
    __table_args__ = (
        db.Index('ix_search_history_user_created', 'user_id', 'created_at'),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    ip_address = db.Column(db.String(45), nullable=False)  # IPv4 or IPv6
    city = db.Column(db.String(120))
    region = db.Column(db.String(120))
    country = db.Column(db.String(120))
    isp = db.Column(db.String(255))
    asn = db.Column(db.String(64))
    timezone = db.Column(db.String(64))
    latitude = db.Column(db.Float)
    longitude = db.Column(db.Float)
    geo_info = db.Column(db.JSON)  # full resolver record, opaque to the backend
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    user = db.relationship('User', backref=db.backref('searches', lazy=True))

    def to_dict(self):
        return {
            'id': self.id,
            'userId': self.user_id,
            'ipAddress': self.ip_address,
            'city': self.city,
            'region': self.region,
            'country': self.country,
            'isp': self.isp,
            'asn': self.asn,
            'timezone': self.timezone,
            'latitude': self.latitude,
            'longitude': self.longitude,
            'geoInfo': self.geo_info,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
        }
