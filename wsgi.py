#!/usr/bin/env python3
"""
Sleek Apparels Order Portal - main application entry point.

Gunicorn serves `wsgi:app` in production; running this file starts the
Flask development server.
"""

import os
from sleek_portal import create_app

# Create Flask application
app = create_app()

if __name__ == '__main__':
    port = int(os.getenv('PORT', 8080))
    debug = os.getenv('FLASK_DEBUG', 'false').lower() == 'true'

    print("Sleek Apparels Order Portal")
    print(f"Running on port {port}")

    app.run(
        host='0.0.0.0',
        port=port,
        debug=debug
    )
