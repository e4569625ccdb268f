import sys
from pathlib import Path
from setuptools import setup, find_packages

if sys.version_info < (3,):
    sys.exit('gblup_gwa requires Python >= 3.6')

try:
    from gblup_gwa import __author__, __email__
except ImportError:  # Deps not yet installed
    __author__ = __email__ = ''


setup(
    name='gblup_gwa',
    version='0.1',
    description='GBLUP, likelihood ratio tests and genome-wide association from linear mixed models',
    long_description=Path('README.md').read_text('utf-8'),
    long_description_content_type="text/markdown",
    author=__author__,
    author_email=__email__,
    license='Apache',
    python_requires='>=3.6',
    install_requires=[
        l.strip() for l in
        Path('requirements.txt').read_text('utf-8').splitlines()
        if l.strip()
        ],
    extras_require={'test': ['pytest']},
    packages=find_packages(exclude=['tests']),
    classifiers=[
        'Environment :: Console',
        'Intended Audience :: Science/Research',
        'Topic :: Genetics',
    ],
)
