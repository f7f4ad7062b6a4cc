# create_admin.py
"""
创建初始 CEO / CTO 账号
⚠️ 仅用于首次部署 / 手动维护

SEED_CEO_EMAIL / SEED_CTO_EMAIL (+ SEED_CEO_NAME / SEED_CTO_NAME) 决定创建哪些账号。
临时密码只打印一次，登录后请立即修改。
"""
from crm.app_factory import create_app
from crm.db.auto_init import seed_executives
from crm.db.session import get_session
from crm.routes.guards import build_user_service


def create_admin():
    app = create_app()
    with app.app_context():
        db = get_session()
        try:
            created = seed_executives(build_user_service(db))
            db.commit()
        except Exception as e:
            db.rollback()
            print(f"❌ 创建失败: {e}")
            raise
        finally:
            db.close()

    if not created:
        print("ℹ️  没有需要创建的账号 (check SEED_CEO_EMAIL / SEED_CTO_EMAIL)")
        return
    for email, temporary_password in created.items():
        print(f"✅ {email}  temporary password: {temporary_password}")
    print("   ⚠️  请登录后立即修改密码！")


if __name__ == "__main__":
    create_admin()
