#!/usr/bin/env python3
"""
Main simulation script for running batches of autonomous examinations.

This script simulates cohorts of patients (genuine and exaggerating hearing
loss) and reports threshold error and malingering risk per cohort.
"""

import argparse
import logging

import numpy as np
import pandas as pd
import yaml
from tqdm import tqdm

from clinical_audiometry import ExaminerConfig, SimulatedPatient, TestOrchestrator, load_config
from clinical_audiometry.session.models import FrequencyStatus
from clinical_audiometry.simulation import generate_hearing_profile
from clinical_audiometry.utils.clock import ManualClock
from clinical_audiometry.utils.errors import ConfigurationError


def load_study(config_path):
    """Load the study definition from YAML file."""
    with open(config_path, 'r') as f:
        return yaml.safe_load(f)


def simulate_patient(examiner_config, profile, behaviour, seed):
    """Run one examination and return per-session metrics."""
    clock = ManualClock()
    patient = SimulatedPatient(profile, clock=clock, random_state=seed, **behaviour)
    orchestrator = TestOrchestrator(config=examiner_config, clock=clock)
    session = orchestrator.run(patient, patient)

    errors = []
    for state in session.frequency_states.values():
        if state.is_confirmed and not state.is_retest:
            errors.append(state.threshold - patient.effective_threshold(state.ear, state.frequency_hz))
    risk = session.latest_risk
    return {
        'trials': len(session.trials),
        'abandoned': len(session.states_with_status(FrequencyStatus.ABANDONED)),
        'mean_abs_error_db': float(np.mean(np.abs(errors))) if errors else np.nan,
        'risk_score': risk.score if risk else np.nan,
        'risk_category': risk.category.value if risk else None,
        'false_positive_rate': session.catch_summary.false_positive_rate,
        'duration_min': (session.finished_at - session.started_at) / 60.0,
    }


def run_simulation(study, examiner_config):
    """Run every cohort of the study; returns one row per simulated patient."""
    sim = study['simulation']
    rng = np.random.default_rng(sim.get('seed'))
    rows = []
    for cohort, behaviour in study['cohorts'].items():
        behaviour = behaviour or {}
        print(f"Simulating cohort '{cohort}' ({sim['n_patients']} patients)")
        for i in tqdm(range(sim['n_patients']), desc=cohort):
            seed = int(rng.integers(2**31))
            profile = generate_hearing_profile(
                frequencies=examiner_config.frequencies,
                mu_right=sim.get('mean_threshold', 20),
                mu_left=sim.get('mean_threshold', 20),
                variance_right=sim.get('threshold_variance', 25.0),
                variance_left=sim.get('threshold_variance', 25.0),
                slope_db_per_octave=sim.get('slope_db_per_octave', 0.0),
                seed=seed,
            )
            row = simulate_patient(examiner_config, profile, behaviour, seed)
            row.update(cohort=cohort, patient=i)
            rows.append(row)
    return pd.DataFrame(rows)


def main():
    parser = argparse.ArgumentParser(description='Run autonomous audiometry simulation study')
    parser.add_argument('--config', type=str,
                       default='configs/simulation.yaml',
                       help='Path to study configuration file')
    parser.add_argument('--n-patients', type=int,
                       help='Number of patients to simulate per cohort')
    parser.add_argument('--output', type=str,
                       help='Optional CSV file for per-patient results')
    parser.add_argument('--verbose', action='store_true',
                       help='Log examiner decisions')

    args = parser.parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format='%(asctime)s %(name)s %(levelname)s %(message)s')

    # Load configuration
    try:
        study = load_study(args.config)
    except FileNotFoundError:
        print(f"Configuration file {args.config} not found. Using defaults.")
        study = {
            'simulation': {'n_patients': 10, 'seed': 42},
            'cohorts': {'genuine': {}, 'exaggerating': {'exaggeration_db': 25,
                                                       'anticipatory_rate': 0.4}},
        }

    try:
        examiner_config = (load_config(study['examiner']) if study.get('examiner')
                           else ExaminerConfig())
    except (FileNotFoundError, ConfigurationError) as e:
        parser.error(f"Invalid examiner configuration: {e}")

    # Override with command line arguments
    if args.n_patients:
        study['simulation']['n_patients'] = args.n_patients

    results = run_simulation(study, examiner_config)

    print("Simulation completed successfully!")
    summary = results.groupby('cohort').agg(
        trials=('trials', 'mean'),
        mean_abs_error_db=('mean_abs_error_db', 'mean'),
        risk_score=('risk_score', 'mean'),
        abandoned=('abandoned', 'sum'),
    )
    print(summary.round(2).to_string())
    print(results.groupby(['cohort', 'risk_category']).size().unstack(fill_value=0).to_string())

    if args.output:
        results.to_csv(args.output, index=False)
        print(f"Results written to {args.output}")


if __name__ == "__main__":
    main()
