#!/usr/bin/env python3
"""Development server runner"""
import os
from dumpwarden import create_app

if __name__ == '__main__':
    # Use development config for local testing
    app = create_app('development')

    # Admin API has no authentication; keep it on loopback
    host = os.environ.get('HOST', '127.0.0.1')
    port = int(os.environ.get('PORT', 8030))
    app.run(host=host, port=port, debug=True)
