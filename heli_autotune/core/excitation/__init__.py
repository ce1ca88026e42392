from .excitation_generator import ExcitationGenerator, ExcitationSample

__all__ = ['ExcitationGenerator', 'ExcitationSample']
