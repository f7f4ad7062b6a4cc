# run.py
"""
run.py
标准 Flask 开发启动脚本（给开发者 / 运维 / CLI 用）
生产环境请用 WSGI server 加载 crm.app_factory:create_app()
"""
import os

from crm.app_factory import create_app


def main():
    # 1️创建 Flask app（校验 ENCRYPTION_KEY、建表、补齐默认角色）
    app = create_app()

    # 2️启动参数
    host = os.getenv("HOST", "127.0.0.1")
    port = int(os.getenv("PORT", 5000))
    debug = os.getenv("FLASK_DEBUG", "0") == "1"

    # 3️启动服务
    app.run(host=host, port=port, debug=debug, use_reloader=False)


if __name__ == "__main__":
    main()
