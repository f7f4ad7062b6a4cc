from sqlalchemy.engine import Engine

from crm.db.base import Base


def init_db(engine: Engine):
    # 导入所有表，保证 metadata 完整
    import crm.models.role  # noqa: F401
    import crm.models.user  # noqa: F401
    import crm.models.user_session  # noqa: F401
    import crm.models.audit_log  # noqa: F401
    import crm.models.support_credential  # noqa: F401
    import crm.models.bank_account  # noqa: F401

    Base.metadata.create_all(bind=engine)
