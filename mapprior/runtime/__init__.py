"""
mapprior.runtime
================

Runtime environment for executing trials on a ledger.

This namespace contains the execution infrastructure that runs trial
templates look by look.

Key Components
--------------
- `ExperimentTemplate`: Base class for all trial definitions
- `AnalysisResult`: Standard result container of one analysis look
- `SequentialRunner`: Look-by-look execution with a results history
- `BatchRunner`: Several templates fed with the same observations
"""
