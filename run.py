"""Development server entry point. `python run.py`"""
import logging
import os
import sys


def main():
    """Configure logging, initialise the database and start the server."""
    os.environ.setdefault('SKIP_AUTO_INIT', '1')

    logging.basicConfig(
        level=getattr(logging, os.environ.get('LOG_LEVEL', 'INFO').upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler('app_startup.log', encoding='utf-8'),
            logging.StreamHandler(sys.stdout)
        ]
    )
    logger = logging.getLogger('PoolContracts_Startup')

    from app import app
    from services.app_init import run_auto_init

    _use_reloader = (os.environ.get('FLASK_USE_RELOADER', '1') == '1')
    _is_reloader_child = (os.environ.get('WERKZEUG_RUN_MAIN') == 'true')
    _should_run_startup_tasks = (not _use_reloader) or _is_reloader_child

    try:
        if _should_run_startup_tasks:
            logger.info("[START] Starting application...")
            run_auto_init(app)
        else:
            logger.info("[SKIP] Reloader parent process skips startup initialisation.")

        app.run(
            host='0.0.0.0',
            port=int(os.environ.get('PORT', 5000)),
            debug=os.environ.get('FLASK_ENV') != 'production',
            use_reloader=_use_reloader,
        )
    except KeyboardInterrupt:
        logger.info("[STOP] Server stopped by user.")
    except Exception as e:
        logger.error(f"[ERROR] Server failed to start: {e}")
        raise


if __name__ == '__main__':
    main()
