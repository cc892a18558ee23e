"""Post-processing agents configured per schema.

  base            — execution metadata, prompt templates, output parsing
  input_validator — marks items that must bypass agents
  pipeline        — ordered batch execution + single-agent test mode
  diagnostics     — per-agent success rates and recommendations
"""

from takeoff.modules.extraction.agents.pipeline import AgentPipeline, PipelineOutcome

__all__ = ["AgentPipeline", "PipelineOutcome"]
