from app import app, bootstrap


# Ensure tables, id repair, indexes and seed accounts exist when running via Gunicorn.
bootstrap()
