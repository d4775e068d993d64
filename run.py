#!/usr/bin/env python3
"""Development server for the dumpkeeper API"""
import os
from dumpkeeper import create_app

if __name__ == '__main__':
    # FLASK_ENV picks the config; the reloader child owns the scheduler in development
    app = create_app(os.environ.get('FLASK_ENV', 'development'))

    app.run(
        host=os.environ.get('HOST', '127.0.0.1'),
        port=int(os.environ.get('PORT', 5000)),
        debug=app.config.get('DEBUG', False)
    )
