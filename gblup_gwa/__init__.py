__author__ = 'gblup_gwa developers'
__email__ = ''
__version__ = '0.1'
