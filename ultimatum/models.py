from ultimatum import db
from datetime import datetime, timezone
import json
import string
import random
import time


def utcnow():
    return datetime.now(timezone.utc)


def _isoformat(value):
    return value.isoformat() if value else None


def generate_player_id():
    """Generate an opaque client id in the `player_<ms>_<base36>` form."""
    suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"player_{int(time.time() * 1000)}_{suffix}"


class Session(db.Model):
    __tablename__ = 'sessions'
    player_id = db.Column(db.String(128), primary_key=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            'player_id': self.player_id,
            'created_at': _isoformat(self.created_at),
            'updated_at': _isoformat(self.updated_at),
        }


class Game(db.Model):
    __tablename__ = 'games'
    id = db.Column(db.Integer, primary_key=True)
    status = db.Column(db.String(16), default='waiting', nullable=False, index=True)  # waiting, active, completed
    current_round = db.Column(db.Integer, nullable=True)
    started_by = db.Column(db.String(128), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    players = db.relationship('GamePlayer', back_populates='game', order_by='GamePlayer.joined_at')

    def to_dict(self):
        return {
            'id': self.id,
            'status': self.status,
            'current_round': self.current_round,
            'started_by': self.started_by,
            'created_at': _isoformat(self.created_at),
        }


class GamePlayer(db.Model):
    __tablename__ = 'game_players'
    __table_args__ = (
        db.UniqueConstraint('game_id', 'player_id', name='uq_game_players_game_player'),
    )
    id = db.Column(db.Integer, primary_key=True)
    game_id = db.Column(db.Integer, db.ForeignKey('games.id'), nullable=False, index=True)
    player_id = db.Column(db.String(128), nullable=False)
    joined_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    game = db.relationship('Game', back_populates='players')

    def to_dict(self):
        return {
            'player_id': self.player_id,
            'joined_at': _isoformat(self.joined_at),
        }


class PlayerRole(db.Model):
    __tablename__ = 'player_roles'
    __table_args__ = (
        db.UniqueConstraint('game_id', 'player_id', 'round_number', name='uq_player_roles_game_player_round'),
    )
    id = db.Column(db.Integer, primary_key=True)
    game_id = db.Column(db.Integer, db.ForeignKey('games.id'), nullable=False, index=True)
    player_id = db.Column(db.String(128), nullable=False)
    round_number = db.Column(db.Integer, nullable=False)
    role = db.Column(db.String(16), nullable=False)  # proposer, responder
    matched_with = db.Column(db.String(128), nullable=False)

    def to_dict(self):
        return {
            'player_id': self.player_id,
            'round_number': self.round_number,
            'role': self.role,
            'matched_with': self.matched_with,
        }


class Round(db.Model):
    __tablename__ = 'rounds'
    __table_args__ = (
        db.UniqueConstraint('game_id', 'round_number', 'proposer_id', 'responder_id', name='uq_rounds_pairing'),
    )
    id = db.Column(db.Integer, primary_key=True)
    game_id = db.Column(db.Integer, db.ForeignKey('games.id'), nullable=False, index=True)
    round_number = db.Column(db.Integer, nullable=False)
    proposer_id = db.Column(db.String(128), nullable=False)
    responder_id = db.Column(db.String(128), nullable=False)
    proposal_amount = db.Column(db.Float, nullable=True)
    responder_decision = db.Column(db.Boolean, nullable=True)
    proposer_payout = db.Column(db.Float, nullable=True)
    responder_payout = db.Column(db.Float, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self):
        return {
            'round_number': self.round_number,
            'proposer_id': self.proposer_id,
            'responder_id': self.responder_id,
            'proposal_amount': self.proposal_amount,
            'responder_decision': self.responder_decision,
            'proposer_payout': self.proposer_payout,
            'responder_payout': self.responder_payout,
            'completed_at': _isoformat(self.completed_at),
        }


class Demographics(db.Model):
    __tablename__ = 'demographics'
    __table_args__ = (
        db.UniqueConstraint('player_id', 'game_id', name='uq_demographics_player_game'),
    )
    id = db.Column(db.Integer, primary_key=True)
    player_id = db.Column(db.String(128), nullable=False)
    game_id = db.Column(db.Integer, db.ForeignKey('games.id'), nullable=False)
    date_of_birth = db.Column(db.String(32), nullable=False)
    birth_country = db.Column(db.String(128), nullable=False)
    current_country = db.Column(db.String(128), nullable=True)
    generation_status = db.Column(db.String(16), nullable=True)  # first, second, third-plus
    countries_lived = db.Column(db.Text, nullable=True)  # JSON-encoded list of {country, start_date, end_date}
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            'player_id': self.player_id,
            'game_id': self.game_id,
            'date_of_birth': self.date_of_birth,
            'birth_country': self.birth_country,
            'current_country': self.current_country,
            'generation_status': self.generation_status,
            'countries_lived': json.loads(self.countries_lived) if self.countries_lived else [],
            'created_at': _isoformat(self.created_at),
        }
