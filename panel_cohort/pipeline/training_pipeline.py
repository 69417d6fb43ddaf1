"""
Main Modeling Pipeline

raw survey rounds -> recode -> composites -> cohort labels/truncation
-> subject-level split -> per-partition temporal features
-> model collaborator fit -> threshold sweep on the held-out partition
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import dask.dataframe as dd
import joblib
import lightgbm as lgb
import numpy as np
import pandas as pd
import xgboost as xgb
import yaml
from dask.diagnostics.progress import ProgressBar
from imblearn.over_sampling import SMOTE
from imblearn.pipeline import Pipeline as ImbPipeline
from sklearn.ensemble import RandomForestClassifier
from sklearn.linear_model import LogisticRegression

from .cohort import CohortDiagnostics, build_labeler
from .composite import CompositeIndexBuilder, composites_from_config
from .feature_engineering import TemporalFeatureEngineer, trim_last_k
from .preprocessing import DataScaler, DataValidator, MissingValueHandler
from .recoding import RecodingTable, SurveyRecoder
from .splitting import build_splitter, reorigin_frame
from ..utils.config import load_config
from ..utils.experiment_tracking import ExperimentTracker
from ..utils.model_utils import ModelEvaluator, ThresholdSweepEvaluator

logger = logging.getLogger(__name__)

ALGORITHMS = ('random_forest', 'logistic_regression', 'lightgbm', 'xgboost')


# =====================
# PanelModelingPipeline
# =====================
class PanelModelingPipeline:
    """End-to-end cohort build, subject-level split, feature build and evaluation."""

    def __init__(self, config: Dict):
        self.config = config
        self.columns: Dict[str, str] = config.get("columns", {})
        self.subject_col = self.columns.get("subject_id", "subject_id")
        self.round_col = self.columns.get("round", "round")
        self.label_col = "label"
        self.seed = int(config.get("random_seed", 42))

        # Config errors (unknown items, bad sentinel sets) surface here, before any data is read
        self.table = RecodingTable.from_config(config.get("items", {}), config.get("default_sentinels"))
        self.composites = composites_from_config(config.get("composites", {}))
        self.recoder = SurveyRecoder(self.table)
        self.composite_builder = CompositeIndexBuilder(self.table, self.composites)
        self.labeler = build_labeler(config.get("cohort", {}), self.columns)
        self.splitter = build_splitter(config.get("split", {}), self.seed, self.columns)
        self.sweep_evaluator = ThresholdSweepEvaluator.from_config(config.get("threshold", {}))
        self.experiment_tracker = ExperimentTracker(config.get("mlflow", {}))

        self.model: Optional[ImbPipeline] = None
        self.feature_engineer: Optional[TemporalFeatureEngineer] = None
        self.feature_names: List[str] = []
        self.best_threshold: float = 0.5
        self.diagnostics: CohortDiagnostics = CohortDiagnostics()
        self.sweep_table: Optional[pd.DataFrame] = None
        self.split_ids: Dict[str, List[Any]] = {}

    # ---------- Data ----------
    def load_data(self, data_path: str) -> pd.DataFrame:
        """Load a parquet (file/dir) or CSV export through dask and compute to pandas."""
        logger.info(f"Loading data from {data_path} using Dask")
        p = Path(data_path)

        if p.suffix.lower() == ".csv":
            ddf = dd.read_csv(str(p), assume_missing=True)
        else:
            ddf = dd.read_parquet(str(p))
        logger.info(f"Dask DataFrame partitions: {ddf.npartitions}")

        with ProgressBar():
            df = ddf.compute()
        df = df.reset_index(drop=True)

        df[self.round_col] = pd.to_numeric(df[self.round_col], errors="coerce")
        logger.info(f"Loaded data shape: {df.shape}, {df[self.subject_col].nunique()} subjects")
        return df

    def validate_data(self, df: pd.DataFrame) -> Dict[str, List[str]]:
        logger.info("Validating raw survey records...")
        cohort_cfg = self.config.get("cohort", {})
        known_codes = (cohort_cfg.get("community_codes", []) + cohort_cfg.get("terminal_codes", [])
                       + cohort_cfg.get("unknown_codes", []))
        validator = DataValidator()
        validator.setup_survey_rules(self.columns, residence_codes=known_codes or None)
        violations = validator.validate(df)
        if violations:
            logger.warning(f"Found {len(violations)} data quality issues: {violations}")
        else:
            logger.info("Data validation passed")

        missing_required = [col for col, issues in violations.items() if "required column is missing" in issues]
        if missing_required:
            raise ValueError(f"Survey data is missing required columns: {missing_required}")
        return violations

    # ---------- Cohort ----------
    def build_modeling_table(self, df: pd.DataFrame) -> pd.DataFrame:
        """Recode items, build composites, label and truncate each subject."""
        recoded = self.recoder.fit_transform(df)
        with_composites = self.composite_builder.fit_transform(recoded)
        table = self.labeler.fit_transform(with_composites)
        self.diagnostics = self.labeler.diagnostics_
        self.diagnostics.invalid_binary_codes = dict(self.recoder.invalid_counts_)
        return table

    # ---------- Splits ----------
    def split_cohort(self, table: pd.DataFrame) -> Tuple[pd.DataFrame, pd.DataFrame]:
        train_df, test_df = self.splitter.split_frame(table)
        self.split_ids = {
            "train": sorted(train_df[self.subject_col].unique(), key=str),
            "test": sorted(test_df[self.subject_col].unique(), key=str),
        }
        return train_df, test_df

    # ---------- Features ----------
    def _prepare_partition(self, df: pd.DataFrame) -> pd.DataFrame:
        last_k = self.config.get("features", {}).get("last_k_rounds")
        trimmed = trim_last_k(df, last_k, self.subject_col, self.round_col)
        return reorigin_frame(trimmed, self.subject_col, self.round_col)

    def build_feature_tables(self, train_df: pd.DataFrame,
                             test_df: pd.DataFrame) -> Tuple[pd.DataFrame, pd.DataFrame]:
        """Trim, re-origin and derive temporal features for each partition separately."""
        feat_cfg = self.config.get("features", {})
        base_features = feat_cfg.get("base_features") or [
            column for c in self.composites for column in (c.count_column, c.flag_column)
        ]
        self.feature_engineer = TemporalFeatureEngineer(
            base_features=base_features,
            lag_features=feat_cfg.get("lag_features"),
            cumulative_features=feat_cfg.get("cumulative_features"),
            interaction_pairs=feat_cfg.get("interaction_pairs"),
            drop_incomplete=feat_cfg.get("drop_incomplete", True),
            subject_col=self.subject_col,
            round_col=self.round_col,
        )

        train_prepared = self._prepare_partition(train_df)
        test_prepared = self._prepare_partition(test_df)
        train_features = self.feature_engineer.fit_transform(train_prepared)
        test_features = self.feature_engineer.transform(test_prepared)
        self.feature_names = list(self.feature_engineer.get_feature_names_out())

        logger.info(f"Feature tables: train {train_features.shape}, test {test_features.shape}, "
                    f"{len(self.feature_names)} model features")
        return train_features, test_features

    # ---------- Model collaborator ----------
    def create_model(self):
        model_cfg = self.config.get("model", {})
        algorithm = model_cfg.get("algorithm", "random_forest")
        logger.info(f"Creating model: {algorithm}")

        if algorithm == "random_forest":
            params = {**model_cfg.get("random_forest", {}), "random_state": self.seed, "n_jobs": -1}
            return RandomForestClassifier(**params)

        if algorithm == "logistic_regression":
            params = {**model_cfg.get("logistic_regression", {}), "random_state": self.seed}
            return LogisticRegression(**params)

        if algorithm == "lightgbm":
            params = {**model_cfg.get("lightgbm", {}), "random_state": self.seed, "n_jobs": -1}
            return lgb.LGBMClassifier(**params)

        if algorithm == "xgboost":
            params = {
                **model_cfg.get("xgboost", {}),
                "random_state": self.seed,
                "n_jobs": -1,
                "tree_method": model_cfg.get("xgboost", {}).get("tree_method", "hist"),
            }
            return xgb.XGBClassifier(**params)

        raise ValueError(f"Unknown algorithm: {algorithm} (expected one of {ALGORITHMS})")

    def build_model_pipeline(self) -> ImbPipeline:
        pre_cfg = self.config.get("preprocessing", {})
        steps: List[Tuple[str, Any]] = [
            ("missing_values", MissingValueHandler(
                numeric_strategy=pre_cfg.get("numeric_strategy", "median"),
                add_indicator=pre_cfg.get("add_indicator", False),
            )),
        ]

        scaling_cfg = pre_cfg.get("scaling", {})
        if scaling_cfg.get("enabled", False):
            steps.append(("scaling", DataScaler(method=scaling_cfg.get("method", "standard"))))

        imb_cfg = self.config.get("imbalance", {})
        if imb_cfg.get("method") == "smote":
            sp = imb_cfg.get("smote", {})
            steps.append((
                "smote",
                SMOTE(
                    sampling_strategy=sp.get("sampling_strategy", 0.3),
                    k_neighbors=sp.get("k_neighbors", 5),
                    random_state=self.seed,
                ),
            ))

        steps.append(("model", self.create_model()))
        return ImbPipeline(steps)

    def train_model(self, X_train: pd.DataFrame, y_train: pd.Series) -> ImbPipeline:
        logger.info(f"Training on {len(X_train)} rows, prevalence {y_train.mean():.3f}")
        if y_train.nunique() < 2:
            raise ValueError("Training partition contains a single class; cannot fit a classifier")
        self.model = self.build_model_pipeline()
        self.model.fit(X_train, y_train)
        return self.model

    def predict_proba(self, X: pd.DataFrame) -> np.ndarray:
        if self.model is None:
            raise ValueError("Model has not been trained")
        return self.model.predict_proba(X[self.feature_names])[:, 1]

    # ---------- Evaluation ----------
    def evaluate_model(self, X_test: pd.DataFrame, y_test: pd.Series) -> Dict[str, Any]:
        """Sweep thresholds on the held-out partition and report the arg-max-F1 operating point."""
        scores = self.predict_proba(X_test)
        self.sweep_table = self.sweep_evaluator.sweep(scores, y_test.to_numpy())
        best = self.sweep_evaluator.best(self.sweep_table)
        self.best_threshold = float(best["threshold"])

        metrics = ModelEvaluator().calculate_metrics(y_test.to_numpy(), scores, self.best_threshold)
        for key in ("roc_auc", "pr_auc"):
            if metrics.get(key) is not None:
                logger.info(f"Held-out {key}: {metrics[key]:.4f}")
        return metrics

    # ---------- Artifacts ----------
    def save_artifacts(self, output_dir: str, metrics: Dict[str, Any]):
        out = Path(output_dir)
        out.mkdir(parents=True, exist_ok=True)

        if self.model is not None:
            joblib.dump(self.model, out / "model.joblib")
        (out / "optimal_threshold.txt").write_text(f"{self.best_threshold:.2f}\n", encoding="utf-8")
        (out / "feature_names.txt").write_text("\n".join(self.feature_names), encoding="utf-8")
        if self.sweep_table is not None:
            self.sweep_table.to_csv(out / "threshold_sweep.csv", index=False)
        (out / "metrics.yaml").write_text(yaml.safe_dump(metrics, sort_keys=False), encoding="utf-8")
        (out / "cohort_diagnostics.yaml").write_text(
            yaml.safe_dump(self.diagnostics.to_dict(), sort_keys=False), encoding="utf-8"
        )
        (out / "split_subjects.yaml").write_text(
            yaml.safe_dump({k: [str(s) for s in v] for k, v in self.split_ids.items()}), encoding="utf-8"
        )
        logger.info(f"Artifacts saved to {out}")

    # ---------- Orchestration ----------
    def run_pipeline(self, data_path: str, output_dir: str) -> Dict[str, Any]:
        logger.info("Starting cohort modeling pipeline...")
        experiment_name = self.config.get("mlflow", {}).get("experiment_name", "panel_cohort")

        with self.experiment_tracker.start_run(experiment_name):
            self.experiment_tracker.log_params(
                {k: v for k, v in self.config.items() if k not in ("items", "composites")}
            )

            df = self.load_data(data_path)
            self.validate_data(df)

            table = self.build_modeling_table(df)
            self.experiment_tracker.log_dict(self.diagnostics.to_dict(), "cohort_diagnostics.json")

            train_df, test_df = self.split_cohort(table)
            train_features, test_features = self.build_feature_tables(train_df, test_df)

            self.train_model(train_features[self.feature_names], train_features[self.label_col])
            metrics = self.evaluate_model(test_features, test_features[self.label_col])
            metrics.update({
                "cohort_subjects": self.diagnostics.subjects_kept,
                "cohort_excluded_subjects": self.diagnostics.subjects_excluded,
                "train_subjects": len(self.split_ids["train"]),
                "test_subjects": len(self.split_ids["test"]),
            })

            self.experiment_tracker.log_metrics(metrics)
            self.experiment_tracker.log_sweep(self.sweep_table)
            self.save_artifacts(output_dir, metrics)
            self.experiment_tracker.log_artifacts(output_dir)

        logger.info(f"Pipeline completed: threshold {self.best_threshold:.2f}, F1 {metrics['f1_score']:.4f}")
        return metrics


# =====================
# CLI entrypoint
# =====================

def main():
    logging.basicConfig(level=logging.INFO)

    parser = argparse.ArgumentParser(description="Build the survey cohort and evaluate a classifier")
    parser.add_argument("--config", type=str, default=None, help="Path to pipeline configuration file")
    parser.add_argument("--data", type=str, required=True, help="Path to raw survey rounds (parquet dir/file or CSV)")
    parser.add_argument("--output", type=str, default="./models", help="Output directory for artifacts")
    args = parser.parse_args()

    config = load_config(args.config)
    pipeline = PanelModelingPipeline(config)
    metrics = pipeline.run_pipeline(args.data, args.output)

    print(f"Training completed! Best threshold {metrics['threshold']:.2f}, F1 {metrics['f1_score']:.4f}. "
          f"Artifacts in: {args.output}")


if __name__ == "__main__":
    main()
