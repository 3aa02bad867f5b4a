"""Exceptions raised by optimizer collaborators."""


class TransientExternalError(Exception):
    """An external dependency (site generator, LLM) failed; retry next cycle."""
    pass


class VariantPublishError(TransientExternalError):
    """The site generator could not generate, promote or delete a variant."""
    pass


class HypothesisGenerationError(TransientExternalError):
    """The language model call for hypotheses failed."""
    pass


class ExperimentConflict(Exception):
    """A second running experiment was about to be created for one restaurant."""
    pass


class OptimizerBusy(Exception):
    """Another worker holds the optimizer lease for this restaurant."""
    pass
