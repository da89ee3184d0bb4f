"""create sessions, games, game_players, player_roles, rounds, demographics

Revision ID: 5c2e9a1f7b3d
Revises:
Create Date: 2026-10-19 00:00:00

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '5c2e9a1f7b3d'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'sessions',
        sa.Column('player_id', sa.String(length=128), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('player_id'),
    )
    op.create_table(
        'games',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('current_round', sa.Integer(), nullable=True),
        sa.Column('started_by', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_games_status', 'games', ['status'])
    op.create_table(
        'game_players',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('game_id', sa.Integer(), nullable=False),
        sa.Column('player_id', sa.String(length=128), nullable=False),
        sa.Column('joined_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['game_id'], ['games.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('game_id', 'player_id', name='uq_game_players_game_player'),
    )
    op.create_index('ix_game_players_game_id', 'game_players', ['game_id'])
    op.create_table(
        'player_roles',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('game_id', sa.Integer(), nullable=False),
        sa.Column('player_id', sa.String(length=128), nullable=False),
        sa.Column('round_number', sa.Integer(), nullable=False),
        sa.Column('role', sa.String(length=16), nullable=False),
        sa.Column('matched_with', sa.String(length=128), nullable=False),
        sa.ForeignKeyConstraint(['game_id'], ['games.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('game_id', 'player_id', 'round_number', name='uq_player_roles_game_player_round'),
    )
    op.create_index('ix_player_roles_game_id', 'player_roles', ['game_id'])
    op.create_table(
        'rounds',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('game_id', sa.Integer(), nullable=False),
        sa.Column('round_number', sa.Integer(), nullable=False),
        sa.Column('proposer_id', sa.String(length=128), nullable=False),
        sa.Column('responder_id', sa.String(length=128), nullable=False),
        sa.Column('proposal_amount', sa.Float(), nullable=True),
        sa.Column('responder_decision', sa.Boolean(), nullable=True),
        sa.Column('proposer_payout', sa.Float(), nullable=True),
        sa.Column('responder_payout', sa.Float(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['game_id'], ['games.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('game_id', 'round_number', 'proposer_id', 'responder_id', name='uq_rounds_pairing'),
    )
    op.create_index('ix_rounds_game_id', 'rounds', ['game_id'])
    op.create_table(
        'demographics',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('player_id', sa.String(length=128), nullable=False),
        sa.Column('game_id', sa.Integer(), nullable=False),
        sa.Column('date_of_birth', sa.String(length=32), nullable=False),
        sa.Column('birth_country', sa.String(length=128), nullable=False),
        sa.Column('current_country', sa.String(length=128), nullable=True),
        sa.Column('generation_status', sa.String(length=16), nullable=True),
        sa.Column('countries_lived', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['game_id'], ['games.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('player_id', 'game_id', name='uq_demographics_player_game'),
    )


def downgrade():
    op.drop_table('demographics')
    op.drop_index('ix_rounds_game_id', table_name='rounds')
    op.drop_table('rounds')
    op.drop_index('ix_player_roles_game_id', table_name='player_roles')
    op.drop_table('player_roles')
    op.drop_index('ix_game_players_game_id', table_name='game_players')
    op.drop_table('game_players')
    op.drop_index('ix_games_status', table_name='games')
    op.drop_table('games')
    op.drop_table('sessions')
