"""
WSGI entry point for classbank.

For gunicorn: wsgi:app
"""

from classbank import app

if __name__ == '__main__':
    app.run()
