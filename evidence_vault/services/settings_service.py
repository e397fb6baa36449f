"""Store identity provider backed by the app settings table."""

from dataclasses import dataclass

from sqlalchemy.orm import Session

from evidence_vault.core.config import Settings
from evidence_vault.models.app_setting import AppSetting

STORE_NAME_KEY: str = "store_name"
SUPPORT_EMAIL_KEY: str = "support_email"
LEGAL_ENTITY_KEY: str = "legal_entity"


@dataclass(frozen=True)
class StoreIdentity:
    store_name: str
    support_email: str
    legal_entity: str | None = None


def get_store_identity(db: Session, *, defaults: Settings) -> StoreIdentity:
    """Read store identity from DB with fallback to configuration."""
    rows: list[AppSetting] = (
        db.query(AppSetting)
        .filter(AppSetting.key.in_([STORE_NAME_KEY, SUPPORT_EMAIL_KEY, LEGAL_ENTITY_KEY]))
        .all()
    )
    values: dict[str, str] = {row.key: row.value for row in rows}
    return StoreIdentity(
        store_name=values.get(STORE_NAME_KEY) or defaults.store_name,
        support_email=values.get(SUPPORT_EMAIL_KEY) or defaults.support_email,
        legal_entity=values.get(LEGAL_ENTITY_KEY) or None,
    )


def save_store_identity(db: Session, identity: StoreIdentity) -> None:
    """Persist store identity in app settings table."""
    for key, value in (
        (STORE_NAME_KEY, identity.store_name),
        (SUPPORT_EMAIL_KEY, identity.support_email),
        (LEGAL_ENTITY_KEY, identity.legal_entity or ""),
    ):
        setting: AppSetting | None = db.query(AppSetting).filter(AppSetting.key == key).first()
        if setting is None:
            setting = AppSetting(key=key, value=value)
            db.add(setting)
        else:
            setting.value = value

    db.commit()
