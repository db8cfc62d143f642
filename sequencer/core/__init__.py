"""Core infrastructure: CLI, config, database."""

from sequencer.core.config import (
    Settings,
    SequenceConfig,
    StepConfig,
    CrmConfig,
    DraftConfig,
    load_settings,
    load_sequence_file,
)
from sequencer.core.db import (
    init_db,
    get_connection,
    insert_sequence,
    get_sequence,
    insert_enrollment,
    get_enrollment,
    list_enrollments,
    get_due_enrollments,
    get_step_logs,
    complete_step_and_advance,
    get_enrollment_stats,
)
