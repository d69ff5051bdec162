"""
neurotbss: resumable FSL TBSS orchestration for cluster environments.
"""

__version__ = '0.1.0'
