# *-* coding: utf-8 *-*
__author__ = 'ppksign contributors'
__license__ = 'MIT'
__version__ = '1.0.0'
