"""
Centralized path configuration for Harbormaster
Ensures all modules use consistent, volume-mounted paths
"""

import os

# Base paths - the /app/data directory is mounted as a volume in Docker
DATA_DIR = os.getenv('HARBORMASTER_DATA_DIR', '/app/data')

# Log directory - rotated application logs
LOG_DIR = os.path.join(DATA_DIR, 'logs')

# For development/testing outside Docker
if not os.path.exists('/app') and 'HARBORMASTER_DATA_DIR' not in os.environ:
    # Running locally, use relative paths
    DATA_DIR = './data'
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
