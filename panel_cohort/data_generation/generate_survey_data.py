"""
Synthetic Longitudinal Survey Generator with Dask

Generates raw (subject, round) survey records with item-specific sentinel
codes and residence-status codes, shaped like the export the cohort pipeline
consumes. Subjects carry a latent frailty that drifts upward across rounds
and drives both item responses and the hazard of moving into institutional
care. Subject batches are generated as dask delayed tasks.
"""

import argparse
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import dask
import numpy as np
import pandas as pd
from dask.delayed import delayed
from faker import Faker

from ..pipeline.recoding import ItemRule, RecodingTable
from ..utils.config import DEFAULT_CONFIG, load_config

logger = logging.getLogger(__name__)

COMMUNITY_CODES = [1, 2, 3]
COMMUNITY_WEIGHTS = [0.90, 0.07, 0.03]
TERMINAL_CODES = [4, 5]
DECEASED_CODE = 6
UNKNOWN_CODES = [7, 8]
# Outside the codebook; exercises the ambiguous-code diagnostics
STRAY_CODE = 9


def _sigmoid(x: float) -> float:
    return 1.0 / (1.0 + np.exp(-x))


class SurveyDataGenerator:
    """Generate synthetic survey data in (subject, round) format."""

    def __init__(self,
                 seed: int = 42,
                 table: Optional[RecodingTable] = None,
                 sentinel_rate: float = 0.04,
                 unknown_residence_rate: float = 0.01,
                 stray_code_rate: float = 0.002,
                 skip_round_rate: float = 0.05,
                 base_hazard: float = -4.0):
        """Initialize the generator.

        Args:
            seed: Random seed for reproducibility
            table: Item rules to generate responses for; defaults to the shipped item table
            sentinel_rate: Probability an item response is replaced by one of its sentinel codes
            unknown_residence_rate: Probability a round's residence status is unknown (codes 7/8)
            stray_code_rate: Probability of a residence code outside the codebook
            skip_round_rate: Probability a subject misses a round (rounds become non-contiguous)
            base_hazard: Log-odds intercept of the per-round institutionalisation hazard
        """
        self.seed = seed
        self.table = table or RecodingTable.from_config(
            DEFAULT_CONFIG['items'], DEFAULT_CONFIG['default_sentinels']
        )
        self.sentinel_rate = sentinel_rate
        self.unknown_residence_rate = unknown_residence_rate
        self.stray_code_rate = stray_code_rate
        self.skip_round_rate = skip_round_rate
        self.base_hazard = base_hazard
        self.fake = Faker()
        Faker.seed(seed)

    def generate_subject_ids(self, num_subjects: int) -> List[str]:
        """Opaque, stable subject identifiers."""
        self.fake.unique.clear()
        return [self.fake.unique.numerify('SP########') for _ in range(num_subjects)]

    def _item_response(self, rule: ItemRule, frailty: float, local_random: np.random.RandomState) -> Any:
        if rule.sentinels and local_random.random_sample() < self.sentinel_rate:
            return int(local_random.choice(sorted(rule.sentinels)))

        p_adverse = _sigmoid(-2.0 + frailty)
        if rule.rule == 'yes_no':
            return 1 if local_random.random_sample() < p_adverse else 2
        # Ordinal scale whose top category sits one above the cut point
        top = int(rule.cut) + 1 if rule.rule == 'at_least' else 5
        return int(local_random.binomial(top - 1, p_adverse)) + 1

    def generate_round_data(self, subject_id: str, round_index: int, frailty: float,
                            residence_code: int, local_random: np.random.RandomState) -> Dict[str, Any]:
        """Generate one (subject, round) record."""
        record = {
            'subject_id': subject_id,
            'round': round_index,
            'residence_code': residence_code,
        }
        for rule in self.table:
            record[rule.name] = self._item_response(rule, frailty, local_random)
        return record

    def _next_residence(self, current: int, frailty: float, local_random: np.random.RandomState) -> int:
        if current in TERMINAL_CODES:
            draw = local_random.random_sample()
            if draw < 0.15:
                return DECEASED_CODE
            if draw < 0.25:
                return 1
            return current
        if local_random.random_sample() < _sigmoid(self.base_hazard + 1.2 * frailty):
            return int(local_random.choice(TERMINAL_CODES))
        return int(local_random.choice(COMMUNITY_CODES, p=COMMUNITY_WEIGHTS))

    def generate_subject_rounds(self, subject_id: str, subject_index: int, max_rounds: int) -> List[Dict]:
        """Generate every round for one subject until dropout, death or ``max_rounds``."""
        local_random = np.random.RandomState((self.seed * 100003 + subject_index) % 2**32)

        first_round = int(local_random.randint(1, max(2, max_rounds // 2) + 1))
        frailty = local_random.normal(0.0, 1.0)
        residence = int(local_random.choice(COMMUNITY_CODES, p=COMMUNITY_WEIGHTS))

        records = []
        for round_index in range(first_round, max_rounds + 1):
            if round_index > first_round and local_random.random_sample() < self.skip_round_rate:
                continue

            reported = residence
            draw = local_random.random_sample()
            if draw < self.stray_code_rate:
                reported = STRAY_CODE
            elif draw < self.stray_code_rate + self.unknown_residence_rate:
                reported = int(local_random.choice(UNKNOWN_CODES))

            records.append(self.generate_round_data(subject_id, round_index, frailty, reported, local_random))
            if residence == DECEASED_CODE:
                break

            frailty += local_random.normal(0.25, 0.3)
            residence = self._next_residence(residence, frailty, local_random)
        return records

    def _generate_subject_batch(self, subject_ids: List[str], offset: int, max_rounds: int) -> List[Dict]:
        records = []
        for i, subject_id in enumerate(subject_ids):
            records.extend(self.generate_subject_rounds(subject_id, offset + i, max_rounds))
        return records

    def generate_dataset(self, num_subjects: int = 1000, max_rounds: int = 8,
                         batch_size: int = 250) -> pd.DataFrame:
        """Generate the full raw survey table, one row per (subject, round)."""
        logger.info(f"Generating {num_subjects} subjects over up to {max_rounds} rounds")
        subject_ids = self.generate_subject_ids(num_subjects)

        tasks = [
            delayed(self._generate_subject_batch)(subject_ids[start:start + batch_size], start, max_rounds)
            for start in range(0, num_subjects, batch_size)
        ]
        logger.info(f"Created {len(tasks)} delayed tasks")
        batches = dask.compute(*tasks, scheduler='threads')

        records = [record for batch in batches for record in batch]
        df = pd.DataFrame(records)
        if not df.empty:
            df = df.sort_values(['subject_id', 'round']).reset_index(drop=True)

        logger.info(f"Generated {len(df)} records for {df['subject_id'].nunique() if len(df) else 0} subjects")
        return df


def main():
    logging.basicConfig(level=logging.INFO)

    parser = argparse.ArgumentParser(description="Generate a synthetic longitudinal survey export")
    parser.add_argument("--num_subjects", type=int, default=1000, help="Number of subjects")
    parser.add_argument("--max_rounds", type=int, default=8, help="Last survey round")
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    parser.add_argument("--config", type=str, default=None, help="Pipeline config whose item table to use")
    parser.add_argument("--output", type=str, default="data/raw/survey_rounds.parquet", help="Output file (.parquet or .csv)")
    args = parser.parse_args()

    config = load_config(args.config)
    table = RecodingTable.from_config(config['items'], config.get('default_sentinels'))
    generator = SurveyDataGenerator(seed=args.seed, table=table)
    df = generator.generate_dataset(num_subjects=args.num_subjects, max_rounds=args.max_rounds)

    output = Path(args.output)
    output.parent.mkdir(parents=True, exist_ok=True)
    if output.suffix.lower() == '.csv':
        df.to_csv(output, index=False)
    else:
        df.to_parquet(output, index=False)
    logger.info(f"Saved {len(df)} records to {output}")


if __name__ == "__main__":
    main()
