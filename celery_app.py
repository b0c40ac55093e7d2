from app import create_app
from app.celery_app import create_celery_app

# Worker / beat entry point:
#   celery -A celery_app.celery worker -Q fulfillment,sweeps -l info
#   celery -A celery_app.celery beat -l info
flask_app = create_app()
celery = create_celery_app(flask_app)
