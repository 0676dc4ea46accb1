from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from flowdesk.models import UserFlowState


def get_user_state(db: Session, tenant_id: str, user_id: str, flow_id) -> Optional[UserFlowState]:
    return (
        db.query(UserFlowState)
        .filter(
            UserFlowState.tenant_id == tenant_id,
            UserFlowState.user_id == user_id,
            UserFlowState.flow_id == flow_id,
        )
        .first()
    )


def get_latest_user_state(db: Session, tenant_id: str, user_id: str) -> Optional[UserFlowState]:
    """Most recently advanced cursor of this user across all flows."""
    return (
        db.query(UserFlowState)
        .filter(UserFlowState.tenant_id == tenant_id, UserFlowState.user_id == user_id)
        .order_by(UserFlowState.updated_at.desc())
        .first()
    )


def create_user_state(db: Session, tenant_id: str, user_id: str, flow_id, node_id: str) -> UserFlowState:
    state = UserFlowState(
        tenant_id=tenant_id,
        user_id=user_id,
        flow_id=flow_id,
        current_node_id=node_id,
        updated_at=datetime.now(timezone.utc),
    )
    db.add(state)
    try:
        db.commit()
    except IntegrityError:
        # created concurrently; the existing cursor wins
        db.rollback()
        state = get_user_state(db, tenant_id, user_id, flow_id)
    return state


def update_user_state(db: Session, state: UserFlowState, node_id: str) -> UserFlowState:
    state.current_node_id = node_id
    state.updated_at = datetime.now(timezone.utc)
    db.commit()
    return state


def delete_user_state(db: Session, state: UserFlowState) -> None:
    db.delete(state)
    db.commit()
