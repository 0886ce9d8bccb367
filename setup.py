"""
Setup script for FitView
Install:  pip install -e .[test]
Run:      fitview
macOS:    python setup.py py2app
"""

from setuptools import setup

APP = ['app.py']
DATA_FILES = []
OPTIONS = {
    'argv_emulation': True,
    'packages': ['fitparse', 'pandas', 'numpy', 'nicegui'],
    'strip': True,
    'compressed': True,
}

setup(
    name='fitview',
    version='0.1.0',
    description='FIT activity summary viewer with a layered state and settings engine',
    python_requires='>=3.9',
    py_modules=['app', 'constants', 'db', 'decoder', 'fit_integration', 'state'],
    packages=['core', 'components'],
    install_requires=[
        'nicegui',
        'pandas',
        'numpy',
        'fitparse',
        'pyperclip',
    ],
    extras_require={
        'test': ['pytest'],
    },
    entry_points={
        'console_scripts': ['fitview=app:main'],
    },
    app=APP,
    data_files=DATA_FILES,
    options={'py2app': OPTIONS},
)
